from pydantic import BaseModel, Field
from typing import Optional, Dict, Literal
from datetime import datetime

ExecutionLogType = Literal[
    "node_start", "transition", "waiting_input", "waiting_timer", "flow_complete", "error"
]


class ExecutionLogData(BaseModel):
    """
    One entry of a session's execution trace, shown in the conversation's flow log panel.
    """
    id: Optional[str] = None  # MongoDB _id
    organization_id: str
    conversation_id: str
    session_id: Optional[str] = None
    flow_id: str
    log_type: ExecutionLogType
    node_id: Optional[str] = None
    node_type: Optional[str] = None
    from_node_id: Optional[str] = None
    to_node_id: Optional[str] = None
    handle: Optional[str] = None
    step: Optional[int] = None
    message: Optional[str] = None
    variables: Optional[Dict[str, str]] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
