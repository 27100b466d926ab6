from pydantic import BaseModel, Field
from typing import Optional, List, Literal
from datetime import datetime

from models.flow_node_data import FlowNode
from models.flow_edge_data import FlowEdge

TriggerMatchMode = Literal["exact", "contains", "starts_with", "regex"]


class FlowData(BaseModel):
    id: Optional[str] = None  # MongoDB _id
    organization_id: str
    name: str
    description: Optional[str] = None
    trigger_enabled: bool = False
    trigger_keywords: List[str] = Field(default_factory=list)
    trigger_match_mode: TriggerMatchMode = "exact"
    connection_ids: List[str] = Field(default_factory=list, description="Empty list means every connection")
    is_active: bool = False
    is_draft: bool = True
    version: int = 1
    nodes: List[FlowNode] = Field(default_factory=list)
    edges: List[FlowEdge] = Field(default_factory=list)
    last_edited_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def accepts_connection(self, connection_id: Optional[str]) -> bool:
        if not self.connection_ids:
            return True
        return connection_id is not None and connection_id in self.connection_ids


class FlowSummary(BaseModel):
    """
    Flow listing row without the graph payload.
    """
    id: str
    organization_id: str
    name: str
    description: Optional[str] = None
    trigger_enabled: bool
    trigger_keywords: List[str]
    trigger_match_mode: TriggerMatchMode
    connection_ids: List[str]
    is_active: bool
    is_draft: bool
    version: int
    node_count: int
    last_edited_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_flow(cls, flow: FlowData) -> "FlowSummary":
        return cls(
            node_count=len(flow.nodes),
            **flow.model_dump(exclude={"nodes", "edges"})
        )
