from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime


class FlowVersionData(BaseModel):
    """
    Immutable snapshot of a flow graph taken before a canvas replace.
    Unique per (flow_id, version).
    """
    id: Optional[str] = None  # MongoDB _id
    flow_id: str = Field(..., description="Flow the snapshot belongs to")
    version: int = Field(..., description="Flow version the snapshot was taken from")
    nodes_data: List[Dict[str, Any]] = Field(default_factory=list)
    edges_data: List[Dict[str, Any]] = Field(default_factory=list)
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
