from pydantic import BaseModel, Field
from typing import Optional, List, Dict
from datetime import datetime

from models.flow_edge_data import FlowEdge


class NodeContext(BaseModel):
    """
    Everything an evaluator may read while evaluating one node.
    `variables` is a copy of the session bag; evaluators return the updated bag in NodeResult.
    """
    organization_id: str
    conversation_id: str
    session_id: Optional[str] = None
    flow_id: str
    variables: Dict[str, str] = Field(default_factory=dict)
    edges: List[FlowEdge] = Field(default_factory=list, description="Outgoing edges of the node")
    inbound_text: Optional[str] = None
    is_resume: bool = Field(default=False, description="True when the node is re-entered by a reply or a timer")
    now: datetime = Field(default_factory=datetime.utcnow)
