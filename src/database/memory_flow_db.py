"""
MemoryFlowDB, a dict-backed flow store for development and testing.

Same interface as FlowDB. Single event loop only, all data is lost on restart.
Every read returns a deep copy so callers can never mutate stored state.
"""
import uuid
from typing import Optional, List, Dict, Any
from datetime import datetime

# Utils
from utils.log_utils import LogUtil

# Database
from database.flow_db_base import BaseFlowDB

# Exceptions
from exceptions.flow_exception import ConcurrencyConflictException

# Models
from models.flow_data import FlowData
from models.flow_version_data import FlowVersionData
from models.flow_session_data import FlowSessionData
from models.delay_data import DelayData
from models.execution_log_data import ExecutionLogData


def _new_id() -> str:
    return uuid.uuid4().hex


class MemoryFlowDB(BaseFlowDB):
    def __init__(self, log_util: Optional[LogUtil] = None):
        self.log_util = log_util
        self._flows: Dict[str, FlowData] = {}
        self._versions: Dict[tuple, FlowVersionData] = {}        # (flow_id, version) -> snapshot
        self._sessions: Dict[str, FlowSessionData] = {}
        self._active_by_conversation: Dict[str, str] = {}        # conversation_id -> session_id
        self._delays: Dict[str, DelayData] = {}
        self._logs: List[ExecutionLogData] = []
        if self.log_util:
            self.log_util.info(service_name="MemoryFlowDB", message="In-memory flow store initialized")

    # Flows

    async def create_flow(self, flow: FlowData) -> FlowData:
        stored = flow.model_copy(deep=True)
        stored.id = _new_id()
        self._flows[stored.id] = stored
        return stored.model_copy(deep=True)

    async def get_flow(self, flow_id: str) -> Optional[FlowData]:
        flow = self._flows.get(flow_id)
        return flow.model_copy(deep=True) if flow else None

    async def get_flow_for_organization(self, organization_id: str, flow_id: str) -> Optional[FlowData]:
        flow = self._flows.get(flow_id)
        if flow is None or flow.organization_id != organization_id:
            return None
        return flow.model_copy(deep=True)

    def _sorted_flows(self, flows: List[FlowData]) -> List[FlowData]:
        # updated_at desc, then id asc
        by_id = sorted(flows, key=lambda f: f.id)
        return [f.model_copy(deep=True) for f in sorted(by_id, key=lambda f: f.updated_at, reverse=True)]

    async def get_flows_by_organization(self, organization_id: str) -> List[FlowData]:
        return self._sorted_flows([f for f in self._flows.values() if f.organization_id == organization_id])

    async def update_flow_fields(self, organization_id: str, flow_id: str, fields: Dict[str, Any]) -> Optional[FlowData]:
        flow = self._flows.get(flow_id)
        if flow is None or flow.organization_id != organization_id:
            return None
        data = flow.model_dump()
        data.update(fields)
        data["updated_at"] = datetime.utcnow()
        updated = FlowData.model_validate(data)
        self._flows[flow_id] = updated
        return updated.model_copy(deep=True)

    async def delete_flow(self, organization_id: str, flow_id: str) -> bool:
        flow = self._flows.get(flow_id)
        if flow is None or flow.organization_id != organization_id:
            return False
        del self._flows[flow_id]
        for key in [k for k in self._versions if k[0] == flow_id]:
            del self._versions[key]
        return True

    async def replace_flow_graph(
        self,
        flow_id: str,
        expected_version: int,
        nodes: List[Dict[str, Any]],
        edges: List[Dict[str, Any]],
        editor_id: Optional[str]
    ) -> Optional[FlowData]:
        flow = self._flows.get(flow_id)
        if flow is None or flow.version != expected_version:
            return None
        data = flow.model_dump()
        data.update({
            "nodes": nodes,
            "edges": edges,
            "version": expected_version + 1,
            "is_draft": False,
            "last_edited_by": editor_id,
            "updated_at": datetime.utcnow()
        })
        # Validate before swapping so a bad payload leaves the stored graph untouched
        updated = FlowData.model_validate(data)
        self._flows[flow_id] = updated
        return updated.model_copy(deep=True)

    async def get_trigger_candidates(self, organization_id: str) -> List[FlowData]:
        return self._sorted_flows([
            f for f in self._flows.values()
            if f.organization_id == organization_id and f.is_active and not f.is_draft and f.trigger_enabled
        ])

    # Versions

    async def save_flow_version(self, version: FlowVersionData) -> bool:
        key = (version.flow_id, version.version)
        if key in self._versions:
            return False
        stored = version.model_copy(deep=True)
        stored.id = _new_id()
        self._versions[key] = stored
        return True

    async def get_flow_versions(self, flow_id: str) -> List[FlowVersionData]:
        versions = [v for (fid, _), v in self._versions.items() if fid == flow_id]
        return [v.model_copy(deep=True) for v in sorted(versions, key=lambda v: v.version, reverse=True)]

    async def get_flow_version(self, flow_id: str, version: int) -> Optional[FlowVersionData]:
        snapshot = self._versions.get((flow_id, version))
        return snapshot.model_copy(deep=True) if snapshot else None

    # Sessions

    async def create_session(self, session: FlowSessionData) -> FlowSessionData:
        if session.is_active and session.conversation_id in self._active_by_conversation:
            raise ConcurrencyConflictException(
                message=f"Conversation {session.conversation_id} already has an active flow session"
            )
        stored = session.model_copy(deep=True)
        stored.id = _new_id()
        self._sessions[stored.id] = stored
        if stored.is_active:
            self._active_by_conversation[stored.conversation_id] = stored.id
        return stored.model_copy(deep=True)

    async def get_session(self, session_id: str) -> Optional[FlowSessionData]:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def get_active_session(self, conversation_id: str) -> Optional[FlowSessionData]:
        session_id = self._active_by_conversation.get(conversation_id)
        if session_id is None:
            return None
        return self._sessions[session_id].model_copy(deep=True)

    async def update_session(self, session: FlowSessionData, expected_revision: int) -> FlowSessionData:
        current = self._sessions.get(session.id)
        if current is None or current.revision != expected_revision:
            raise ConcurrencyConflictException(
                message=f"Session {session.id} was modified concurrently (expected revision {expected_revision})"
            )
        if session.is_active:
            owner = self._active_by_conversation.get(session.conversation_id)
            if owner is not None and owner != session.id:
                raise ConcurrencyConflictException(
                    message=f"Conversation {session.conversation_id} already has an active flow session"
                )
        stored = session.model_copy(deep=True)
        stored.revision = expected_revision + 1
        stored.updated_at = datetime.utcnow()
        self._sessions[stored.id] = stored
        if stored.is_active:
            self._active_by_conversation[stored.conversation_id] = stored.id
        elif self._active_by_conversation.get(stored.conversation_id) == stored.id:
            del self._active_by_conversation[stored.conversation_id]
        return stored.model_copy(deep=True)

    async def get_active_sessions_by_flow(self, flow_id: str) -> List[FlowSessionData]:
        return [
            s.model_copy(deep=True) for s in self._sessions.values()
            if s.flow_id == flow_id and s.is_active
        ]

    # Delays

    async def save_delay(self, delay: DelayData) -> DelayData:
        stored = delay.model_copy(deep=True)
        stored.id = _new_id()
        self._delays[stored.id] = stored
        return stored.model_copy(deep=True)

    async def get_pending_delays(self, now: datetime) -> List[DelayData]:
        due = [d for d in self._delays.values() if not d.processed and d.resume_at <= now]
        return [d.model_copy(deep=True) for d in sorted(due, key=lambda d: d.resume_at)]

    async def mark_delay_as_processed(self, delay_id: str) -> bool:
        delay = self._delays.get(delay_id)
        if delay is None or delay.processed:
            return False
        delay.processed = True
        delay.processed_at = datetime.utcnow()
        return True

    async def mark_session_delays_processed(self, session_id: str) -> int:
        count = 0
        for delay in self._delays.values():
            if delay.session_id == session_id and not delay.processed:
                delay.processed = True
                delay.processed_at = datetime.utcnow()
                count += 1
        return count

    # Execution logs

    async def save_execution_logs(self, logs: List[ExecutionLogData]) -> None:
        for log in logs:
            stored = log.model_copy(deep=True)
            stored.id = _new_id()
            self._logs.append(stored)

    async def get_execution_logs(
        self,
        organization_id: str,
        conversation_id: Optional[str] = None,
        limit: int = 100
    ) -> List[ExecutionLogData]:
        matching = [
            log for log in self._logs
            if log.organization_id == organization_id
            and (conversation_id is None or log.conversation_id == conversation_id)
        ]
        # Insertion order breaks created_at ties, newest first
        matching.reverse()
        matching = sorted(matching, key=lambda log: log.created_at, reverse=True)
        return [log.model_copy(deep=True) for log in matching[:limit]]

    async def delete_execution_logs(self, organization_id: str, conversation_id: Optional[str] = None) -> int:
        keep = []
        removed = 0
        for log in self._logs:
            if log.organization_id == organization_id and (conversation_id is None or log.conversation_id == conversation_id):
                removed += 1
            else:
                keep.append(log)
        self._logs = keep
        return removed
