from typing import Optional
from pydantic import BaseModel, Field


class WebhookMessageRequest(BaseModel):
    """
    Request model for inbound messages forwarded by the messaging service.
    One request per message received on a conversation.
    """
    organization_id: str = Field(..., description="Organization that owns the conversation")
    connection_id: Optional[str] = Field(None, description="Messaging connection (WhatsApp number/instance) the message arrived on")
    conversation_id: str = Field(..., description="Conversation the message belongs to")
    text: Optional[str] = Field("", description="Message text or button/list reply text")
    message_type: str = Field(default="text", description="Type of message (text, button, image, audio, etc.)")
    contact_name: Optional[str] = Field(None, description="Contact display name, exposed to flows as {nome}")
    contact_phone: Optional[str] = Field(None, description="Contact phone, exposed to flows as {telefone}")

    class Config:
        json_schema_extra = {
            "example": {
                "organization_id": "org_1",
                "connection_id": "conn_1",
                "conversation_id": "conv_42",
                "text": "oi",
                "message_type": "text",
                "contact_name": "Maria",
                "contact_phone": "5511999999999"
            }
        }
