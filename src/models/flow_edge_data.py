from pydantic import BaseModel, ConfigDict
from typing import Optional


class FlowEdge(BaseModel):
    model_config = ConfigDict(extra='allow')

    edge_id: str
    source_node_id: str
    target_node_id: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None
    label: Optional[str] = None
    edge_type: str = "default"
