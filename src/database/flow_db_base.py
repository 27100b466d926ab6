"""
Abstract Flow DB, the interface every persistence backend implements.

Implementations:
  - FlowDB        (MongoDB via motor, production)
  - MemoryFlowDB  (dict-based, single-process, tests and local development)
"""
from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Any
from datetime import datetime

# Models
from models.flow_data import FlowData
from models.flow_version_data import FlowVersionData
from models.flow_session_data import FlowSessionData
from models.delay_data import DelayData
from models.execution_log_data import ExecutionLogData


class BaseFlowDB(ABC):
    """Interface that all flow persistence backends must implement."""

    # Flows

    @abstractmethod
    async def create_flow(self, flow: FlowData) -> FlowData:
        ...

    @abstractmethod
    async def get_flow(self, flow_id: str) -> Optional[FlowData]:
        ...

    @abstractmethod
    async def get_flow_for_organization(self, organization_id: str, flow_id: str) -> Optional[FlowData]:
        ...

    @abstractmethod
    async def get_flows_by_organization(self, organization_id: str) -> List[FlowData]:
        """Flows of an organization, most recently updated first."""
        ...

    @abstractmethod
    async def update_flow_fields(self, organization_id: str, flow_id: str, fields: Dict[str, Any]) -> Optional[FlowData]:
        ...

    @abstractmethod
    async def delete_flow(self, organization_id: str, flow_id: str) -> bool:
        ...

    @abstractmethod
    async def replace_flow_graph(
        self,
        flow_id: str,
        expected_version: int,
        nodes: List[Dict[str, Any]],
        edges: List[Dict[str, Any]],
        editor_id: Optional[str]
    ) -> Optional[FlowData]:
        """
        Replace nodes and edges, bump version, clear is_draft, in one write guarded by
        version == expected_version. Returns None when the guard fails.
        """
        ...

    @abstractmethod
    async def get_trigger_candidates(self, organization_id: str) -> List[FlowData]:
        """Active, published, trigger-enabled flows ordered by updated_at desc then id asc."""
        ...

    # Versions

    @abstractmethod
    async def save_flow_version(self, version: FlowVersionData) -> bool:
        """Returns False when a snapshot for (flow_id, version) already exists."""
        ...

    @abstractmethod
    async def get_flow_versions(self, flow_id: str) -> List[FlowVersionData]:
        ...

    @abstractmethod
    async def get_flow_version(self, flow_id: str, version: int) -> Optional[FlowVersionData]:
        ...

    # Sessions

    @abstractmethod
    async def create_session(self, session: FlowSessionData) -> FlowSessionData:
        """Raises ConcurrencyConflictException if the conversation already has an active session."""
        ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[FlowSessionData]:
        ...

    @abstractmethod
    async def get_active_session(self, conversation_id: str) -> Optional[FlowSessionData]:
        ...

    @abstractmethod
    async def update_session(self, session: FlowSessionData, expected_revision: int) -> FlowSessionData:
        """
        Compare-and-set write. Raises ConcurrencyConflictException when the stored revision
        differs from expected_revision. Returns the stored session with revision bumped.
        """
        ...

    @abstractmethod
    async def get_active_sessions_by_flow(self, flow_id: str) -> List[FlowSessionData]:
        ...

    # Delays

    @abstractmethod
    async def save_delay(self, delay: DelayData) -> DelayData:
        ...

    @abstractmethod
    async def get_pending_delays(self, now: datetime) -> List[DelayData]:
        ...

    @abstractmethod
    async def mark_delay_as_processed(self, delay_id: str) -> bool:
        ...

    @abstractmethod
    async def mark_session_delays_processed(self, session_id: str) -> int:
        ...

    # Execution logs

    @abstractmethod
    async def save_execution_logs(self, logs: List[ExecutionLogData]) -> None:
        ...

    @abstractmethod
    async def get_execution_logs(
        self,
        organization_id: str,
        conversation_id: Optional[str] = None,
        limit: int = 100
    ) -> List[ExecutionLogData]:
        """Newest first."""
        ...

    @abstractmethod
    async def delete_execution_logs(self, organization_id: str, conversation_id: Optional[str] = None) -> int:
        ...

    # Lifecycle

    async def ensure_indexes(self) -> None:
        return None

    def close(self) -> None:
        return None
