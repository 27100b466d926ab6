from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse
from typing import Dict, Any

# Utils
from utils.log_utils import LogUtil

# Services
from services.webhook_service import WebhookService

# Models
from models.request.webhook_message_request import WebhookMessageRequest
from models.response.webhook_message_response import WebhookMessageResponse

# Exceptions
from exceptions.flow_exception import FlowException


def create_webhook_message_api(
    log_util: LogUtil,
    webhook_service: WebhookService
) -> APIRouter:
    """
    Create API router for inbound messages.
    The messaging service calls this for every message received on a conversation.
    """
    router = APIRouter(
        prefix="/webhook",
        tags=["webhook"],
    )

    @router.post("/message", response_model=WebhookMessageResponse)
    async def process_webhook_message(request: WebhookMessageRequest):
        """
        Process an inbound message.

        This endpoint:
        1. Resumes the conversation's flow if it is waiting for a reply
        2. Otherwise checks the organization's triggers and starts the matching flow
        3. Returns the session's state after the message was handled
        """
        try:
            response = await webhook_service.process_webhook_message(request)
            if response.status == "conflict":
                return JSONResponse(status_code=409, content=response.model_dump(mode="json"))
            return response

        except FlowException as e:
            log_util.error(
                service_name="WebhookMessageAPI",
                message=f"Error processing message for conversation {request.conversation_id}: {e.message}"
            )
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except Exception as e:
            log_util.error(
                service_name="WebhookMessageAPI",
                message=f"Error processing message for conversation {request.conversation_id}: {str(e)}"
            )

            # Return error response instead of raising exception
            # so the messaging service keeps delivering the conversation normally
            return WebhookMessageResponse(
                status="error",
                message="Error processing webhook message",
                automation_triggered=False,
                error_details=str(e)
            )

    @router.get("/health")
    async def webhook_health_check() -> Dict[str, Any]:
        """Health check endpoint for webhook API"""
        return {
            "status": "healthy",
            "api": "webhook_message_api",
            "service": "flow_automation_engine"
        }

    return router
