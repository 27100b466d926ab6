from pydantic import BaseModel, Field, Discriminator
from typing import Optional, List, Dict, Any, Union, Literal, Annotated
from datetime import datetime


# Effects: outbound side effects an evaluator asks the engine to apply

class SendMessageEffect(BaseModel):
    effect_type: Literal["send_message"] = "send_message"
    message_type: Literal["text", "image", "video", "audio", "document"] = "text"
    text: Optional[str] = ""
    media_url: Optional[str] = None
    delay_before_seconds: float = 0


class SendTypingEffect(BaseModel):
    effect_type: Literal["send_typing"] = "send_typing"
    duration_seconds: float = 3


class CallWebhookEffect(BaseModel):
    """
    Audit record of a webhook call already performed by the webhook evaluator.
    """
    effect_type: Literal["call_webhook"] = "call_webhook"
    method: str
    url: str
    status_code: Optional[int] = None
    success: bool = False
    error: Optional[str] = None


class CreateCRMTaskEffect(BaseModel):
    effect_type: Literal["create_crm_task"] = "create_crm_task"
    title: str
    description: Optional[str] = ""
    due_in_days: Optional[int] = None


class SendExternalNotificationEffect(BaseModel):
    effect_type: Literal["send_external_notification"] = "send_external_notification"
    channel: Literal["internal", "whatsapp"] = "internal"
    recipient: Optional[str] = None
    message: str


class SendEmailEffect(BaseModel):
    effect_type: Literal["send_email"] = "send_email"
    to: str
    subject: str = ""
    html: str = ""


class SetTagEffect(BaseModel):
    effect_type: Literal["set_tag"] = "set_tag"
    tag_id: str
    add: bool = True


class TransferConversationEffect(BaseModel):
    effect_type: Literal["transfer_conversation"] = "transfer_conversation"
    transfer_type: Literal["department", "agent", "queue"]
    target_id: Optional[str] = ""


class CloseConversationEffect(BaseModel):
    effect_type: Literal["close_conversation"] = "close_conversation"


Effect = Annotated[
    Union[
        SendMessageEffect,
        SendTypingEffect,
        CallWebhookEffect,
        CreateCRMTaskEffect,
        SendExternalNotificationEffect,
        SendEmailEffect,
        SetTagEffect,
        TransferConversationEffect,
        CloseConversationEffect
    ],
    Discriminator("effect_type")
]


# Next decisions: how the engine proceeds after a node

class Advance(BaseModel):
    decision: Literal["advance"] = "advance"
    node_id: str
    handle: Optional[str] = None


class AwaitInput(BaseModel):
    decision: Literal["await_input"] = "await_input"
    kind: Literal["menu", "text"] = "text"


class Suspend(BaseModel):
    decision: Literal["suspend"] = "suspend"
    resume_at: datetime


class Terminate(BaseModel):
    decision: Literal["terminate"] = "terminate"
    outcome: Literal["completed", "failed", "cancelled"] = "completed"
    reason: Optional[str] = None


NextDecision = Annotated[
    Union[Advance, AwaitInput, Suspend, Terminate],
    Discriminator("decision")
]


class NodeResult(BaseModel):
    effects: List[Effect] = Field(default_factory=list)
    next: NextDecision
    variables: Dict[str, str] = Field(default_factory=dict)


class HttpCallResult(BaseModel):
    status_code: int
    body: str = ""
    json_body: Optional[Any] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300
