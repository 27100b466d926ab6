"""
Node Evaluation Service
One evaluator per node type, selected by a single dispatch on node_type.

Evaluators never touch persistence or the session. They read the node content and a
NodeContext and return a NodeResult: the effects to apply, the next decision and the
updated variable bag. AI and webhook nodes call their collaborators here because the
response decides the branch.
"""
import json
from datetime import timedelta
from typing import Optional, List, Dict, Any, Callable, Awaitable

# Utils
from utils.log_utils import LogUtil
from utils.interpolation_utils import interpolate, interpolate_structure, get_variable

# Services
from services.reply_validation_service import ReplyValidationService
from services.internal.ai_service import AIService
from services.internal.http_request_service import HttpRequestService
from services.internal.channel_service import ChannelService

# Models
from models.flow_edge_data import FlowEdge
from models.flow_node_data import (
    FlowNode, MessageNode, MenuNode, InputNode, ConditionNode, ActionNode,
    TransferNode, AIResponseNode, DelayNode, WebhookNode, ConditionRule
)
from models.node_context_data import NodeContext
from models.node_result_data import (
    NodeResult, Advance, AwaitInput, Suspend, Terminate,
    SendMessageEffect, SendTypingEffect, CallWebhookEffect, CreateCRMTaskEffect,
    SendExternalNotificationEffect, SendEmailEffect, SetTagEffect,
    TransferConversationEffect, CloseConversationEffect
)

# Exceptions
from exceptions.flow_exception import ExternalCallException

GALLERY_ITEM_DELAY_SECONDS = 1.5
MENU_ATTEMPTS_PREFIX = "__menu_attempts__"

DEFAULT_MENU_PROMPT = "Selecione uma opção:"
DEFAULT_MENU_INVALID = "Opção inválida. Responda com o número ou o nome de uma das opções."
DEFAULT_INPUT_PROMPT = "Digite sua resposta:"
DEFAULT_INPUT_ERRORS = {
    "email": "Por favor, informe um e-mail válido.",
    "phone": "Por favor, informe um telefone válido com DDD.",
    "number": "Por favor, informe apenas números.",
    "cpf": "Por favor, informe um CPF válido.",
    "date": "Por favor, informe uma data válida (DD/MM/AAAA).",
    "text": "Por favor, digite uma resposta.",
}

TRUE_HANDLES = ("true", "yes", "sim")
FALSE_HANDLES = ("false", "no", "nao", "não")
ERROR_HANDLE = "error"
MENU_FALLBACK_HANDLES = ("fallback", "default")


def select_edge(edges: List[FlowEdge], handle: Optional[str] = None, strict: bool = False) -> Optional[FlowEdge]:
    """
    Pick the outgoing edge for a handle.

    1. first edge whose source_handle equals the handle
    2. first edge whose label equals the handle (case-insensitive)
    3. unless strict, the first edge
    """
    if handle is not None:
        for edge in edges:
            if edge.source_handle == handle:
                return edge
        lowered = handle.lower()
        for edge in edges:
            if edge.label and edge.label.strip().lower() == lowered:
                return edge
    if strict or not edges:
        return None
    return edges[0]


def _non_error_edges(edges: List[FlowEdge]) -> List[FlowEdge]:
    return [edge for edge in edges if edge.source_handle != ERROR_HANDLE]


def _to_float(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    text = str(value).strip()
    if text.count(",") == 1 and "." not in text:
        text = text.replace(",", ".")
    try:
        return float(text)
    except (ValueError, TypeError):
        return None


def evaluate_rule(rule: ConditionRule, variables: Dict[str, str]) -> bool:
    actual = get_variable(variables, rule.variable)
    expected = interpolate(rule.value or "", variables)
    operator = rule.operator

    if operator == "equals":
        return actual == expected
    if operator == "not_equals":
        return actual != expected
    if operator == "contains":
        return expected in actual
    if operator == "not_contains":
        return expected not in actual
    if operator == "starts_with":
        return actual.startswith(expected)
    if operator == "ends_with":
        return actual.endswith(expected)
    if operator == "is_empty":
        return actual.strip() == ""
    if operator == "is_not_empty":
        return actual.strip() != ""
    if operator in ("greater_than", "less_than"):
        left = _to_float(actual)
        right = _to_float(expected)
        if left is None or right is None:
            return False
        return left > right if operator == "greater_than" else left < right
    return False


def extract_response_value(body: str, json_body: Any, response_path: Optional[str]) -> str:
    """
    Whole body, or the field at a dotted path ("data.items.0.id"), as a string.
    Structured values are JSON-encoded. A missing path gives "".
    """
    if not response_path:
        return body or ""
    if json_body is None:
        return ""
    value = json_body
    for part in response_path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        elif isinstance(value, list) and part.isdecimal() and int(part) < len(value):
            value = value[int(part)]
        else:
            return ""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


class NodeEvaluationService:
    """
    Evaluates a single flow node. See module docstring.
    """

    def __init__(
        self,
        log_util: LogUtil,
        reply_validation_service: ReplyValidationService,
        ai_service: Optional[AIService] = None,
        http_request_service: Optional[HttpRequestService] = None,
        channel_service: Optional[ChannelService] = None
    ):
        self.log_util = log_util
        self.reply_validation_service = reply_validation_service
        self.ai_service = ai_service
        self.http_request_service = http_request_service
        self.channel_service = channel_service

        self._evaluators: Dict[str, Callable[[Any, NodeContext], Awaitable[NodeResult]]] = {
            "start": self._evaluate_start,
            "message": self._evaluate_message,
            "menu": self._evaluate_menu,
            "input": self._evaluate_input,
            "condition": self._evaluate_condition,
            "action": self._evaluate_action,
            "transfer": self._evaluate_transfer,
            "ai_response": self._evaluate_ai_response,
            "delay": self._evaluate_delay,
            "webhook": self._evaluate_webhook,
            "end": self._evaluate_end,
        }

    async def evaluate(self, node: FlowNode, context: NodeContext) -> NodeResult:
        evaluator = self._evaluators.get(node.node_type)
        if evaluator is None:
            self.log_util.warning(
                service_name="NodeEvaluationService",
                message=f"[EVALUATE] Unknown node type '{node.node_type}' for node {node.node_id}"
            )
            return NodeResult(next=Terminate(outcome="failed", reason="unknown_node_type"), variables=dict(context.variables))
        return await evaluator(node, context)

    def _advance(
        self,
        edges: List[FlowEdge],
        variables: Dict[str, str],
        effects: Optional[List[Any]] = None,
        handle: Optional[str] = None,
        strict: bool = False
    ) -> NodeResult:
        edge = select_edge(edges, handle, strict)
        if edge is None:
            next_decision = Terminate(outcome="completed", reason="no_outgoing_edge")
        else:
            next_decision = Advance(node_id=edge.target_node_id, handle=edge.source_handle or handle)
        return NodeResult(effects=effects or [], next=next_decision, variables=variables)

    async def _evaluate_start(self, node, context: NodeContext) -> NodeResult:
        return self._advance(context.edges, dict(context.variables))

    async def _evaluate_end(self, node, context: NodeContext) -> NodeResult:
        return NodeResult(next=Terminate(outcome="completed", reason="flow_end"), variables=dict(context.variables))

    async def _evaluate_message(self, node: MessageNode, context: NodeContext) -> NodeResult:
        content = node.content
        variables = dict(context.variables)
        effects: List[Any] = []

        if content.typing:
            effects.append(SendTypingEffect())

        if content.media_type == "gallery" and content.gallery_images:
            for index, image in enumerate(content.gallery_images):
                caption = ""
                if index == 0:
                    caption = interpolate(content.caption or image.caption, variables)
                effects.append(SendMessageEffect(
                    message_type="image",
                    text=caption,
                    media_url=image.url,
                    delay_before_seconds=0 if index == 0 else GALLERY_ITEM_DELAY_SECONDS
                ))
        elif content.media_type in ("image", "video", "document") and content.media_url:
            effects.append(SendMessageEffect(
                message_type=content.media_type,
                text=interpolate(content.caption, variables),
                media_url=content.media_url
            ))
        elif content.media_type == "audio" and content.media_url:
            effects.append(SendMessageEffect(message_type="audio", text="", media_url=content.media_url))
        elif content.text:
            effects.append(SendMessageEffect(message_type="text", text=interpolate(content.text, variables)))
        else:
            self.log_util.warning(
                service_name="NodeEvaluationService",
                message=f"[EVALUATE] Message node {node.node_id} has no content to send"
            )

        return self._advance(context.edges, variables, effects)

    def _menu_text(self, prompt: str, node: MenuNode) -> str:
        lines = [f"{index + 1}. {option.label or option.value}" for index, option in enumerate(node.content.options)]
        if not lines:
            return prompt
        return f"{prompt}\n\n" + "\n".join(lines)

    async def _evaluate_menu(self, node: MenuNode, context: NodeContext) -> NodeResult:
        content = node.content
        variables = dict(context.variables)
        attempts_key = f"{MENU_ATTEMPTS_PREFIX}{node.node_id}"

        if not context.is_resume:
            prompt = interpolate(content.text or DEFAULT_MENU_PROMPT, variables)
            return NodeResult(
                effects=[SendMessageEffect(text=self._menu_text(prompt, node))],
                next=AwaitInput(kind="menu"),
                variables=variables
            )

        match = self.reply_validation_service.match_menu_option(context.inbound_text, content.options)
        if match is not None:
            index, option = match
            variables.pop(attempts_key, None)
            if content.variable_name:
                variables[content.variable_name] = option.label or option.value or ""

            for handle in (option.id, f"option_{index}", option.value):
                if handle and select_edge(context.edges, handle, strict=True) is not None:
                    return self._advance(context.edges, variables, handle=handle, strict=True)
            # Menu with one generic output
            generic_edges = [edge for edge in context.edges if not edge.source_handle]
            return self._advance(generic_edges, variables)

        attempts = int(variables.get(attempts_key, "0") or 0) + 1
        if attempts >= content.max_attempts:
            variables.pop(attempts_key, None)
            self.log_util.info(
                service_name="NodeEvaluationService",
                message=f"[MENU] Max attempts ({content.max_attempts}) reached on node {node.node_id}"
            )
            for handle in MENU_FALLBACK_HANDLES:
                edge = select_edge(context.edges, handle, strict=True)
                if edge is not None:
                    return NodeResult(next=Advance(node_id=edge.target_node_id, handle=handle), variables=variables)
            return NodeResult(next=Terminate(outcome="failed", reason="menu_max_attempts"), variables=variables)

        variables[attempts_key] = str(attempts)
        invalid = interpolate(content.invalid_message, variables) or self._menu_text(DEFAULT_MENU_INVALID, node)
        return NodeResult(
            effects=[SendMessageEffect(text=invalid)],
            next=AwaitInput(kind="menu"),
            variables=variables
        )

    async def _evaluate_input(self, node: InputNode, context: NodeContext) -> NodeResult:
        content = node.content
        variables = dict(context.variables)

        if not context.is_resume:
            return NodeResult(
                effects=[SendMessageEffect(text=interpolate(content.text or DEFAULT_INPUT_PROMPT, variables))],
                next=AwaitInput(kind="text"),
                variables=variables
            )

        reply = (context.inbound_text or "").strip()
        if not reply and not content.required:
            variables[content.variable_name] = ""
            return self._advance(context.edges, variables)

        if self.reply_validation_service.validate_input(reply, content.validation):
            variables[content.variable_name] = reply
            return self._advance(context.edges, variables)

        error_message = interpolate(content.error_message, variables) or DEFAULT_INPUT_ERRORS.get(content.validation, DEFAULT_INPUT_ERRORS["text"])
        return NodeResult(
            effects=[SendMessageEffect(text=error_message)],
            next=AwaitInput(kind="text"),
            variables=variables
        )

    async def _evaluate_condition(self, node: ConditionNode, context: NodeContext) -> NodeResult:
        content = node.content
        variables = dict(context.variables)

        results = [evaluate_rule(rule, variables) for rule in content.rules]
        if not results:
            outcome = False
        elif content.logic == "or":
            outcome = any(results)
        else:
            outcome = all(results)

        self.log_util.info(
            service_name="NodeEvaluationService",
            message=f"[CONDITION] Node {node.node_id} evaluated {len(results)} rule(s) with '{content.logic}': {outcome}"
        )

        for handle in (TRUE_HANDLES if outcome else FALSE_HANDLES):
            edge = select_edge(context.edges, handle, strict=True)
            if edge is not None:
                return NodeResult(next=Advance(node_id=edge.target_node_id, handle=handle), variables=variables)
        return NodeResult(next=Terminate(outcome="completed", reason="no_outgoing_edge"), variables=variables)

    async def _evaluate_action(self, node: ActionNode, context: NodeContext) -> NodeResult:
        content = node.content
        variables = dict(context.variables)
        effects: List[Any] = []
        action_type = content.action_type

        if action_type == "set_variable":
            if content.variable_name:
                variables[content.variable_name] = interpolate(content.variable_value, variables)
        elif action_type in ("add_tag", "remove_tag"):
            if content.tag_id:
                effects.append(SetTagEffect(tag_id=content.tag_id, add=action_type == "add_tag"))
        elif action_type == "send_email":
            to = interpolate(content.email_to, variables).strip()
            if to:
                effects.append(SendEmailEffect(
                    to=to,
                    subject=interpolate(content.email_subject, variables),
                    html=interpolate(content.email_body, variables)
                ))
        elif action_type == "notify":
            effects.append(SendExternalNotificationEffect(
                channel="internal",
                message=interpolate(content.notification_message, variables)
            ))
        elif action_type == "notify_external":
            phone = interpolate(content.phone_number, variables).strip()
            message = interpolate(content.external_message, variables)
            if phone and message:
                effects.append(SendExternalNotificationEffect(channel="whatsapp", recipient=phone, message=message))
        elif action_type == "create_task":
            effects.append(CreateCRMTaskEffect(
                title=interpolate(content.task_title, variables) or node.name or "Tarefa do fluxo",
                description=interpolate(content.task_description, variables),
                due_in_days=content.task_due_in_days
            ))
        elif action_type == "close_conversation":
            return NodeResult(
                effects=[CloseConversationEffect()],
                next=Terminate(outcome="completed", reason="conversation_closed"),
                variables=variables
            )

        return self._advance(context.edges, variables, effects)

    async def _evaluate_transfer(self, node: TransferNode, context: NodeContext) -> NodeResult:
        content = node.content
        variables = dict(context.variables)
        effects: List[Any] = []

        if content.transfer_message:
            effects.append(SendMessageEffect(text=interpolate(content.transfer_message, variables)))
        effects.append(TransferConversationEffect(transfer_type=content.transfer_type, target_id=content.target_id))

        if content.end_flow:
            return NodeResult(effects=effects, next=Terminate(outcome="completed", reason="transferred"), variables=variables)
        return self._advance(context.edges, variables, effects)

    def _ai_error_result(self, node: AIResponseNode, context: NodeContext, variables: Dict[str, str], error: str) -> NodeResult:
        self.log_util.error(
            service_name="NodeEvaluationService",
            message=f"[AI_RESPONSE] AI call failed on node {node.node_id}: {error}"
        )
        edge = select_edge(context.edges, ERROR_HANDLE, strict=True)
        if edge is not None:
            return NodeResult(next=Advance(node_id=edge.target_node_id, handle=ERROR_HANDLE), variables=variables)
        return NodeResult(next=Terminate(outcome="failed", reason="ai_error"), variables=variables)

    async def _evaluate_ai_response(self, node: AIResponseNode, context: NodeContext) -> NodeResult:
        content = node.content
        variables = dict(context.variables)

        if self.ai_service is None:
            return self._ai_error_result(node, context, variables, "AI provider is not configured")

        system_prompt = interpolate(content.system_prompt, variables)
        known = "\n".join(
            f"- {key}: {value}" for key, value in variables.items()
            if not key.startswith("__") and value
        )
        if known:
            system_prompt = f"{system_prompt}\n\nKnown variables:\n{known}".strip()

        messages: List[Dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})

        if content.include_history and content.history_limit > 0 and self.channel_service is not None:
            try:
                messages.extend(await self.channel_service.get_history(context.conversation_id, content.history_limit))
            except ExternalCallException as e:
                self.log_util.warning(
                    service_name="NodeEvaluationService",
                    message=f"[AI_RESPONSE] History unavailable for conversation {context.conversation_id}: {str(e)}"
                )

        if context.inbound_text:
            messages.append({"role": "user", "content": context.inbound_text})

        try:
            reply = await self.ai_service.complete(
                messages=messages,
                model=content.model or None,
                temperature=content.temperature
            )
        except ExternalCallException as e:
            return self._ai_error_result(node, context, variables, str(e))

        variables[content.save_to_variable or "resposta_ia"] = reply
        effects: List[Any] = []
        if content.send_reply and reply:
            effects.append(SendMessageEffect(text=reply))
        return self._advance(_non_error_edges(context.edges), variables, effects, handle="success")

    async def _evaluate_delay(self, node: DelayNode, context: NodeContext) -> NodeResult:
        content = node.content
        variables = dict(context.variables)

        if context.is_resume:
            return self._advance(context.edges, variables)

        effects: List[Any] = []
        if content.typing:
            effects.append(SendTypingEffect(duration_seconds=min(content.total_seconds, 3) or 1))
        return NodeResult(
            effects=effects,
            next=Suspend(resume_at=context.now + timedelta(seconds=content.total_seconds)),
            variables=variables
        )

    async def _evaluate_webhook(self, node: WebhookNode, context: NodeContext) -> NodeResult:
        content = node.content
        variables = dict(context.variables)

        url = interpolate(content.url, variables).strip()
        headers = {
            interpolate(header.key, variables): interpolate(header.value, variables)
            for header in content.headers
            if header.key
        }
        body: Any = None
        if content.body:
            # JSON bodies are interpolated per value
            try:
                body = interpolate_structure(json.loads(content.body), variables)
            except ValueError:
                body = interpolate(content.body, variables)

        status_code = None
        error = None
        result = None
        if not url:
            error = "Webhook URL is empty"
        elif self.http_request_service is None:
            error = "HTTP collaborator is not configured"
        else:
            try:
                result = await self.http_request_service.call(
                    method=content.method,
                    url=url,
                    headers=headers,
                    body=body,
                    timeout=content.timeout
                )
                status_code = result.status_code
                if not result.ok:
                    error = f"HTTP {result.status_code}"
            except ExternalCallException as e:
                error = str(e)

        success = error is None
        effects: List[Any] = [CallWebhookEffect(
            method=content.method,
            url=url,
            status_code=status_code,
            success=success,
            error=error
        )]

        if success:
            if content.response_variable:
                variables[content.response_variable] = extract_response_value(result.body, result.json_body, content.response_path)
            return self._advance(_non_error_edges(context.edges), variables, effects, handle="success")

        self.log_util.error(
            service_name="NodeEvaluationService",
            message=f"[WEBHOOK] {content.method} {url} failed on node {node.node_id}: {error}"
        )
        if content.continue_on_error:
            edge = select_edge(context.edges, ERROR_HANDLE, strict=True)
            if edge is not None:
                return NodeResult(effects=effects, next=Advance(node_id=edge.target_node_id, handle=ERROR_HANDLE), variables=variables)
            return self._advance(_non_error_edges(context.edges), variables, effects, handle="success")
        return NodeResult(effects=effects, next=Terminate(outcome="failed", reason="webhook_error"), variables=variables)
