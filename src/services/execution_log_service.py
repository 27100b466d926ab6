"""
Execution Log Service
Collects the per-node trace of a session while the engine steps, and serves it back
to the conversation's flow log panel.
"""
from typing import Optional, List, Dict

from utils.log_utils import LogUtil
from database.flow_db_base import BaseFlowDB
from models.execution_log_data import ExecutionLogData, ExecutionLogType


class ExecutionTrace:
    """
    Log entries of one engine event. Written in one batch when the event finishes.
    """

    def __init__(self, organization_id: str, conversation_id: str, flow_id: str, session_id: Optional[str]):
        self.organization_id = organization_id
        self.conversation_id = conversation_id
        self.flow_id = flow_id
        self.session_id = session_id
        self.entries: List[ExecutionLogData] = []

    def add(
        self,
        log_type: ExecutionLogType,
        node_id: Optional[str] = None,
        node_type: Optional[str] = None,
        from_node_id: Optional[str] = None,
        to_node_id: Optional[str] = None,
        handle: Optional[str] = None,
        step: Optional[int] = None,
        message: Optional[str] = None,
        variables: Optional[Dict[str, str]] = None
    ) -> None:
        self.entries.append(ExecutionLogData(
            organization_id=self.organization_id,
            conversation_id=self.conversation_id,
            session_id=self.session_id,
            flow_id=self.flow_id,
            log_type=log_type,
            node_id=node_id,
            node_type=node_type,
            from_node_id=from_node_id,
            to_node_id=to_node_id,
            handle=handle,
            step=step,
            message=message,
            variables=dict(variables) if variables is not None else None
        ))


class ExecutionLogService:
    """
    Service for storing and reading execution logs.
    """

    def __init__(self, log_util: LogUtil, flow_db: BaseFlowDB, default_limit: int = 200):
        self.log_util = log_util
        self.flow_db = flow_db
        self.default_limit = default_limit

    def start_trace(self, organization_id: str, conversation_id: str, flow_id: str, session_id: Optional[str]) -> ExecutionTrace:
        return ExecutionTrace(organization_id, conversation_id, flow_id, session_id)

    async def flush(self, trace: ExecutionTrace) -> None:
        """
        Persist the trace. Log storage failures never fail the event itself.
        """
        if not trace.entries:
            return
        entries = trace.entries
        trace.entries = []
        try:
            for entry in entries:
                if entry.session_id is None:
                    entry.session_id = trace.session_id
            await self.flow_db.save_execution_logs(entries)
        except Exception as e:
            self.log_util.error(
                service_name="ExecutionLogService",
                message=f"Error saving {len(entries)} execution log(s) for conversation {trace.conversation_id}: {str(e)}"
            )

    async def get_logs(self, organization_id: str, conversation_id: str, limit: Optional[int] = None) -> List[ExecutionLogData]:
        return await self.flow_db.get_execution_logs(
            organization_id=organization_id,
            conversation_id=conversation_id,
            limit=limit or self.default_limit
        )

    async def clear_logs(self, organization_id: str, conversation_id: str) -> int:
        deleted = await self.flow_db.delete_execution_logs(organization_id, conversation_id)
        self.log_util.info(
            service_name="ExecutionLogService",
            message=f"Deleted {deleted} execution log(s) for conversation {conversation_id}"
        )
        return deleted
