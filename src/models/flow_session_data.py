from enum import Enum
from pydantic import BaseModel, Field
from typing import Optional, Dict
from datetime import datetime


class SessionStatus(str, Enum):
    RUNNING = "running"
    AWAITING_INPUT = "awaiting_input"
    AWAITING_TIMER = "awaiting_timer"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class FlowSessionData(BaseModel):
    """
    Live execution state of one flow bound to one conversation.
    At most one active session exists per conversation_id.
    """
    id: Optional[str] = None  # MongoDB _id
    conversation_id: str
    organization_id: str
    connection_id: Optional[str] = None
    flow_id: str
    current_node_id: str = "start"
    variables: Dict[str, str] = Field(default_factory=dict)
    status: SessionStatus = SessionStatus.RUNNING
    is_active: bool = True
    revision: int = Field(default=0, description="Optimistic concurrency counter, bumped on every write")
    end_reason: Optional[str] = None
    resume_at: Optional[datetime] = None
    started_by: Optional[str] = None
    started_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    ended_at: Optional[datetime] = None
