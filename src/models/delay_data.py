from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime


class DelayData(BaseModel):
    """
    Durable timer job written when a delay node suspends a session.
    Polled by the delay scheduler, which resumes the session once resume_at has passed.
    """
    id: Optional[str] = None  # MongoDB _id
    conversation_id: str = Field(..., description="Conversation the suspended session belongs to")
    session_id: str = Field(..., description="Session that was suspended")
    flow_id: str = Field(..., description="Flow ID where delay node exists")
    node_id: str = Field(..., description="Delay node ID the session is parked on")
    resume_at: datetime = Field(..., description="When the session should resume")
    processed: bool = Field(default=False, description="Whether the resume has been delivered")
    processed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow, description="Timestamp when delay record was created")
