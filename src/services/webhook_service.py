from typing import Dict

# Utils
from utils.log_utils import LogUtil

# Services
from services.flow_execution_service import FlowExecutionService

# Models
from models.request.webhook_message_request import WebhookMessageRequest
from models.response.webhook_message_response import WebhookMessageResponse
from models.response.execution_result import ExecutionResult

STATUS_MESSAGES: Dict[str, str] = {
    "waiting_input": "Flow is waiting for the contact's reply",
    "waiting_timer": "Flow is waiting for a delay to elapse",
    "completed": "Flow completed",
    "failed": "Flow stopped with an error",
    "cancelled": "Flow cancelled",
    "ignored": "Message ignored by flow automation",
    "no_trigger": "No trigger matched",
    "conflict": "Conversation is being processed concurrently, try again",
}


class WebhookService:
    """
    Service for handling inbound messages forwarded by the messaging service.
    Every message either resumes the conversation's waiting flow or may trigger a new one.
    """

    def __init__(self, log_util: LogUtil, flow_execution_service: FlowExecutionService):
        self.log_util = log_util
        self.flow_execution_service = flow_execution_service

    async def process_webhook_message(self, request: WebhookMessageRequest) -> WebhookMessageResponse:
        self.log_util.info(
            service_name="WebhookService",
            message=f"Received {request.message_type} message on conversation {request.conversation_id}, organization_id: {request.organization_id}"
        )

        result: ExecutionResult = await self.flow_execution_service.handle_inbound_message(
            organization_id=request.organization_id,
            connection_id=request.connection_id,
            conversation_id=request.conversation_id,
            text=request.text,
            contact_name=request.contact_name,
            contact_phone=request.contact_phone
        )

        response = WebhookMessageResponse(
            status=result.status,
            message=STATUS_MESSAGES.get(result.status, result.status),
            automation_triggered=result.handled,
            flow_id=result.flow_id,
            session_id=result.session_id,
            current_node_id=result.current_node_id if result.status in ("waiting_input", "waiting_timer") else None,
            error_details=result.end_reason if result.status in ("failed", "conflict") else None
        )

        self.log_util.info(
            service_name="WebhookService",
            message=f"Conversation {request.conversation_id} processed: {result.status} (flow: {result.flow_id}, node: {result.current_node_id})"
        )
        return response
