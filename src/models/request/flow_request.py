from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any

from models.flow_data import TriggerMatchMode


class FlowCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    trigger_enabled: bool = False
    trigger_keywords: List[str] = Field(default_factory=list)
    trigger_match_mode: TriggerMatchMode = "exact"
    connection_ids: List[str] = Field(default_factory=list)


class FlowUpdateRequest(BaseModel):
    """
    Partial update of flow settings. Only fields that are set are applied.
    """
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    trigger_enabled: Optional[bool] = None
    trigger_keywords: Optional[List[str]] = None
    trigger_match_mode: Optional[TriggerMatchMode] = None
    connection_ids: Optional[List[str]] = None
    is_active: Optional[bool] = None
    is_draft: Optional[bool] = None


class CanvasRequest(BaseModel):
    """
    Full graph replacement sent by the editor.
    Nodes and edges are accepted in stored shape or in the editor's shape (id/type/data).
    """
    nodes: List[Dict[str, Any]] = Field(default_factory=list)
    edges: List[Dict[str, Any]] = Field(default_factory=list)


class StartFlowRequest(BaseModel):
    flow_id: str
    conversation_id: str
    connection_id: Optional[str] = None
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None
    variables: Dict[str, str] = Field(default_factory=dict)
