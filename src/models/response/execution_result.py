from typing import Optional, List, Literal
from pydantic import BaseModel, Field

from models.node_result_data import Effect

ExecutionStatus = Literal[
    "waiting_input", "waiting_timer", "completed", "failed",
    "cancelled", "ignored", "no_trigger", "conflict"
]


class ExecutionResult(BaseModel):
    """
    Outcome of handling one engine event (inbound message, timer, manual start, cancel).
    """
    status: ExecutionStatus
    session_id: Optional[str] = None
    flow_id: Optional[str] = None
    current_node_id: Optional[str] = None
    end_reason: Optional[str] = None
    steps: int = 0
    effects: List[Effect] = Field(default_factory=list)

    @property
    def handled(self) -> bool:
        return self.status not in ("no_trigger", "ignored")
