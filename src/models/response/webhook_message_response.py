from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field


class WebhookMessageResponse(BaseModel):
    """
    Response model for inbound message processing.
    Indicates whether automation was triggered and the session's state afterwards.
    """
    status: str = Field(..., description="Engine status (started, resumed, waiting_input, completed, no_trigger, ...)")
    message: str = Field(..., description="Human-readable message")
    automation_triggered: bool = Field(default=False, description="Whether flow automation handled the message")
    flow_id: Optional[str] = Field(None, description="Flow ID if automation handled the message")
    session_id: Optional[str] = Field(None, description="Session ID if automation handled the message")
    current_node_id: Optional[str] = Field(None, description="Current node ID if automation is active")
    error_details: Optional[str] = Field(None, description="Error details if status is error")

    class Config:
        json_schema_extra = {
            "example": {
                "status": "waiting_input",
                "message": "Flow is waiting for the contact's reply",
                "automation_triggered": True,
                "flow_id": "65f0c1...",
                "session_id": "65f0c2...",
                "current_node_id": "menu_1",
                "error_details": None
            }
        }
