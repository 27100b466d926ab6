"""
Flow Execution Service
The engine: drives a conversation's session through the flow graph.

Events (inbound message, timer fire, manual start, cancel) are serialized per
conversation with an asyncio.Lock. Across processes every session write is a
compare-and-set on `revision`. A conflicting event is re-run once from a fresh
read, then reported as `conflict`.
"""
import asyncio
import traceback
import weakref
from collections import defaultdict
from datetime import datetime
from typing import Optional, Dict, List, Any, Callable, Awaitable

# Utils
from utils.log_utils import LogUtil

# Database
from database.flow_db_base import BaseFlowDB

# Services
from services.trigger_identification_service import TriggerIdentificationService
from services.node_evaluation_service import NodeEvaluationService
from services.effect_dispatch_service import EffectDispatchService
from services.execution_log_service import ExecutionLogService
from services.delay_scheduler_service import DelaySchedulerService

# Models
from models.flow_data import FlowData
from models.flow_edge_data import FlowEdge
from models.flow_node_data import START_NODE_ID
from models.flow_session_data import FlowSessionData, SessionStatus
from models.node_context_data import NodeContext
from models.node_result_data import Advance, AwaitInput, Suspend, Terminate
from models.response.execution_result import ExecutionResult

# Exceptions
from exceptions.flow_exception import (
    ConcurrencyConflictException,
    FlowNotFoundException,
    FlowValidationException,
    FlowStepLoopException
)

DEFAULT_MAX_FLOW_STEPS = 50

# A session left in `running` longer than this was abandoned by a crashed worker
STALE_RUNNING_SECONDS = 300

_OUTCOME_STATUS = {
    "completed": SessionStatus.COMPLETED,
    "failed": SessionStatus.FAILED,
    "cancelled": SessionStatus.CANCELLED,
}


class FlowExecutionService:
    def __init__(
        self,
        log_util: LogUtil,
        flow_db: BaseFlowDB,
        trigger_identification_service: TriggerIdentificationService,
        node_evaluation_service: NodeEvaluationService,
        effect_dispatch_service: EffectDispatchService,
        execution_log_service: ExecutionLogService,
        delay_scheduler_service: DelaySchedulerService,
        max_steps: int = DEFAULT_MAX_FLOW_STEPS,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.log_util = log_util
        self.flow_db = flow_db
        self.trigger_identification_service = trigger_identification_service
        self.node_evaluation_service = node_evaluation_service
        self.effect_dispatch_service = effect_dispatch_service
        self.execution_log_service = execution_log_service
        self.delay_scheduler_service = delay_scheduler_service
        self.max_steps = max_steps
        self.clock = clock or datetime.utcnow
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    async def _with_conflict_retry(
        self,
        operation: Callable[[], Awaitable[ExecutionResult]],
        conversation_id: str
    ) -> ExecutionResult:
        """
        Run an event. On a concurrency conflict, re-run it once from a fresh read.
        """
        try:
            return await operation()
        except ConcurrencyConflictException as e:
            self.log_util.warning(
                service_name="FlowExecutionService",
                message=f"[ENGINE] Conflict on conversation {conversation_id}, retrying once: {e.message}"
            )
        try:
            return await operation()
        except ConcurrencyConflictException as e:
            self.log_util.error(
                service_name="FlowExecutionService",
                message=f"[ENGINE] ❌ Conflict on conversation {conversation_id} persisted after retry: {e.message}"
            )
            return ExecutionResult(status="conflict", end_reason="concurrency_conflict")

    # Public operations

    async def handle_inbound_message(
        self,
        organization_id: str,
        connection_id: Optional[str],
        conversation_id: str,
        text: Optional[str],
        contact_name: Optional[str] = None,
        contact_phone: Optional[str] = None
    ) -> ExecutionResult:
        """
        Resume the conversation's waiting session with the reply, or start the flow the text triggers.
        """
        async def operation() -> ExecutionResult:
            session = await self.flow_db.get_active_session(conversation_id)

            if session is not None and session.organization_id != organization_id:
                self.log_util.warning(
                    service_name="FlowExecutionService",
                    message=f"[ENGINE] Conversation {conversation_id} has a session of another organization, ignoring"
                )
                return self._result("ignored", session)

            if session is not None and session.status == SessionStatus.RUNNING:
                if (self.clock() - session.updated_at).total_seconds() < STALE_RUNNING_SECONDS:
                    return self._result("ignored", session)
                await self._end_session(session, SessionStatus.FAILED, "stale_session")
                session = None

            if session is not None:
                if session.status == SessionStatus.AWAITING_INPUT:
                    self.log_util.info(
                        service_name="FlowExecutionService",
                        message=f"[ENGINE] Resuming session {session.id} at node {session.current_node_id} with reply"
                    )
                    return await self._run(session, inbound_text=text, is_resume=True)
                # Awaiting a timer: only the scheduler moves the session
                return self._result("ignored", session)

            flow = await self.trigger_identification_service.match_trigger(organization_id, connection_id, text)
            if flow is None:
                return ExecutionResult(status="no_trigger")

            return await self._start_session(
                flow=flow,
                conversation_id=conversation_id,
                connection_id=connection_id,
                started_by=None,
                variables=self._contact_variables(contact_name, contact_phone),
                inbound_text=text
            )

        async with self._lock_for(conversation_id):
            return await self._with_conflict_retry(operation, conversation_id)

    async def start_flow(
        self,
        organization_id: str,
        flow_id: str,
        conversation_id: str,
        connection_id: Optional[str] = None,
        started_by: Optional[str] = None,
        variables: Optional[Dict[str, str]] = None,
        contact_name: Optional[str] = None,
        contact_phone: Optional[str] = None
    ) -> ExecutionResult:
        """
        Manually start a flow on a conversation, replacing any active session.
        """
        flow = await self.flow_db.get_flow_for_organization(organization_id, flow_id)
        if flow is None:
            raise FlowNotFoundException(message=f"Flow {flow_id} not found")
        if not flow.is_active:
            raise FlowValidationException(message=f"Flow {flow_id} is not active")

        initial_variables = self._contact_variables(contact_name, contact_phone)
        initial_variables.update({key: str(value) for key, value in (variables or {}).items() if value is not None})

        async def operation() -> ExecutionResult:
            existing = await self.flow_db.get_active_session(conversation_id)
            if existing is not None:
                await self._end_session(existing, SessionStatus.CANCELLED, "replaced")
            return await self._start_session(
                flow=flow,
                conversation_id=conversation_id,
                connection_id=connection_id,
                started_by=started_by,
                variables=initial_variables,
                inbound_text=None
            )

        async with self._lock_for(conversation_id):
            return await self._with_conflict_retry(operation, conversation_id)

    async def resume_from_timer(self, conversation_id: str, session_id: str, node_id: str) -> ExecutionResult:
        """
        Continue a session parked on a delay node. A no-op unless the session is still
        active, still awaiting the timer on that very node, and the timer is due.
        """
        async def operation() -> ExecutionResult:
            session = await self.flow_db.get_session(session_id)
            if session is None or session.conversation_id != conversation_id:
                return ExecutionResult(status="ignored", session_id=session_id, end_reason="session_not_found")
            if not session.is_active or session.status != SessionStatus.AWAITING_TIMER:
                return self._result("ignored", session, end_reason="session_not_waiting")
            if session.current_node_id != node_id:
                return self._result("ignored", session, end_reason="node_moved")
            if session.resume_at is not None and self.clock() < session.resume_at:
                return self._result("ignored", session, end_reason="not_due")

            self.log_util.info(
                service_name="FlowExecutionService",
                message=f"[ENGINE] Timer fired for session {session.id} at node {node_id}"
            )
            return await self._run(session, inbound_text=None, is_resume=True)

        async with self._lock_for(conversation_id):
            return await self._with_conflict_retry(operation, conversation_id)

    async def cancel_session(self, organization_id: str, conversation_id: str, reason: str = "cancelled") -> ExecutionResult:
        async def operation() -> ExecutionResult:
            session = await self.flow_db.get_active_session(conversation_id)
            if session is None or session.organization_id != organization_id:
                raise FlowNotFoundException(message=f"No active flow session for conversation {conversation_id}")
            ended = await self._end_session(session, SessionStatus.CANCELLED, reason)
            return self._result("cancelled", ended, end_reason=reason)

        async with self._lock_for(conversation_id):
            return await self._with_conflict_retry(operation, conversation_id)

    async def cancel_flow_sessions(self, flow_id: str, reason: str = "flow_disabled") -> int:
        """
        Cancel every active session of a flow. Returns how many were cancelled.
        """
        sessions = await self.flow_db.get_active_sessions_by_flow(flow_id)
        cancelled = 0
        for candidate in sessions:
            async def operation(session_id: str = candidate.id) -> ExecutionResult:
                session = await self.flow_db.get_session(session_id)
                if session is None or not session.is_active or session.flow_id != flow_id:
                    return ExecutionResult(status="ignored", session_id=session_id)
                ended = await self._end_session(session, SessionStatus.CANCELLED, reason)
                return self._result("cancelled", ended, end_reason=reason)

            async with self._lock_for(candidate.conversation_id):
                result = await self._with_conflict_retry(operation, candidate.conversation_id)
            if result.status == "cancelled":
                cancelled += 1

        if sessions:
            self.log_util.info(
                service_name="FlowExecutionService",
                message=f"[ENGINE] Cancelled {cancelled}/{len(sessions)} active session(s) of flow {flow_id} ({reason})"
            )
        return cancelled

    async def get_active_session(self, organization_id: str, conversation_id: str) -> FlowSessionData:
        session = await self.flow_db.get_active_session(conversation_id)
        if session is None or session.organization_id != organization_id:
            raise FlowNotFoundException(message=f"No active flow session for conversation {conversation_id}")
        return session

    # Internals

    @staticmethod
    def _contact_variables(contact_name: Optional[str], contact_phone: Optional[str]) -> Dict[str, str]:
        variables: Dict[str, str] = {}
        if contact_name:
            variables["nome"] = contact_name
        if contact_phone:
            variables["telefone"] = contact_phone
        return variables

    @staticmethod
    def _result(status: str, session: Optional[FlowSessionData], end_reason: Optional[str] = None,
                steps: int = 0, effects: Optional[List[Any]] = None) -> ExecutionResult:
        return ExecutionResult(
            status=status,
            session_id=session.id if session else None,
            flow_id=session.flow_id if session else None,
            current_node_id=session.current_node_id if session else None,
            end_reason=end_reason if end_reason is not None else (session.end_reason if session else None),
            steps=steps,
            effects=effects or []
        )

    async def _start_session(
        self,
        flow: FlowData,
        conversation_id: str,
        connection_id: Optional[str],
        started_by: Optional[str],
        variables: Dict[str, str],
        inbound_text: Optional[str]
    ) -> ExecutionResult:
        session = await self.flow_db.create_session(FlowSessionData(
            conversation_id=conversation_id,
            organization_id=flow.organization_id,
            connection_id=connection_id,
            flow_id=flow.id,
            current_node_id=START_NODE_ID,
            variables=variables,
            status=SessionStatus.RUNNING,
            started_by=started_by
        ))
        self.log_util.info(
            service_name="FlowExecutionService",
            message=f"[ENGINE] ✅ Started flow '{flow.name}' (id: {flow.id}) on conversation {conversation_id}, session {session.id}"
        )
        return await self._run(session, inbound_text=inbound_text, is_resume=False, flow=flow)

    async def _end_session(self, session: FlowSessionData, status: SessionStatus, reason: str) -> FlowSessionData:
        """
        Deactivate a session outside of a run (cancel, replace, stale cleanup).
        """
        expected_revision = session.revision
        session.is_active = False
        session.status = status
        session.end_reason = reason
        session.ended_at = self.clock()
        session.resume_at = None
        ended = await self.flow_db.update_session(session, expected_revision)
        await self.flow_db.mark_session_delays_processed(ended.id)

        trace = self.execution_log_service.start_trace(ended.organization_id, ended.conversation_id, ended.flow_id, ended.id)
        trace.add("flow_complete", node_id=ended.current_node_id, message=f"{status.value}: {reason}")
        await self.execution_log_service.flush(trace)

        self.log_util.info(
            service_name="FlowExecutionService",
            message=f"[ENGINE] Session {ended.id} ended as {status.value} ({reason})"
        )
        return ended

    async def _run(
        self,
        session: FlowSessionData,
        inbound_text: Optional[str],
        is_resume: bool,
        flow: Optional[FlowData] = None
    ) -> ExecutionResult:
        """
        Step the session until it waits, suspends or terminates.
        """
        trace = self.execution_log_service.start_trace(session.organization_id, session.conversation_id, session.flow_id, session.id)
        pending_effects: List[Any] = []
        variables = dict(session.variables)
        current_node_id = session.current_node_id
        steps = 0

        try:
            if flow is None:
                flow = await self.flow_db.get_flow(session.flow_id)

            if flow is None:
                decision = Terminate(outcome="failed", reason="flow_not_found")
                trace.add("error", node_id=current_node_id, message=f"Flow {session.flow_id} no longer exists")
            else:
                # Arena of the graph as loaded for this event
                nodes = {node.node_id: node for node in flow.nodes}
                edges_by_source: Dict[str, List[FlowEdge]] = defaultdict(list)
                for edge in flow.edges:
                    edges_by_source[edge.source_node_id].append(edge)

                while True:
                    node = nodes.get(current_node_id)
                    if node is None:
                        decision = Terminate(outcome="failed", reason="node_not_found")
                        trace.add("error", node_id=current_node_id, step=steps, message=f"Node {current_node_id} not found in flow")
                        break

                    trace.add("node_start", node_id=node.node_id, node_type=node.node_type, step=steps)
                    context = NodeContext(
                        organization_id=session.organization_id,
                        conversation_id=session.conversation_id,
                        session_id=session.id,
                        flow_id=session.flow_id,
                        variables=variables,
                        edges=edges_by_source.get(node.node_id, []),
                        inbound_text=inbound_text,
                        is_resume=is_resume,
                        now=self.clock()
                    )
                    try:
                        result = await self.node_evaluation_service.evaluate(node, context)
                    except Exception as e:
                        self.log_util.error(
                            service_name="FlowExecutionService",
                            message=f"[ENGINE] ❌ Error evaluating node {node.node_id} ({node.node_type}): {str(e)}\n{traceback.format_exc()}"
                        )
                        decision = Terminate(outcome="failed", reason="node_error")
                        trace.add("error", node_id=node.node_id, node_type=node.node_type, step=steps, message=str(e))
                        break

                    variables = result.variables
                    pending_effects.extend(result.effects)

                    decision = result.next
                    if not isinstance(decision, Advance):
                        break

                    if decision.node_id not in nodes:
                        trace.add("error", node_id=node.node_id, step=steps, message=f"Edge target {decision.node_id} not found in flow")
                        decision = Terminate(outcome="failed", reason="node_not_found")
                        break

                    trace.add("transition", from_node_id=node.node_id, to_node_id=decision.node_id, handle=decision.handle, step=steps)
                    current_node_id = decision.node_id
                    is_resume = False
                    steps += 1

                    if steps > self.max_steps:
                        loop_error = FlowStepLoopException(
                            message=f"Session {session.id} exceeded {self.max_steps} steps in one event",
                            steps=steps
                        )
                        self.log_util.error(service_name="FlowExecutionService", message=f"[ENGINE] ❌ {loop_error.message}")
                        trace.add("error", node_id=current_node_id, step=steps, message=loop_error.message)
                        decision = Terminate(outcome="failed", reason="flow_loop_detected")
                        break

            outcome = await self._persist_decision(session, decision, current_node_id, variables, trace, steps, pending_effects)
            # Effects go out only after the step is stored
            for effect in pending_effects:
                await self.effect_dispatch_service.apply(session.organization_id, session.conversation_id, effect)
            return outcome
        finally:
            await self.execution_log_service.flush(trace)

    async def _persist_decision(
        self,
        session: FlowSessionData,
        decision: Any,
        current_node_id: str,
        variables: Dict[str, str],
        trace: Any,
        steps: int,
        effects: List[Any]
    ) -> ExecutionResult:
        expected_revision = session.revision
        session.current_node_id = current_node_id
        session.variables = variables

        if isinstance(decision, AwaitInput):
            session.status = SessionStatus.AWAITING_INPUT
            session.resume_at = None
            stored = await self.flow_db.update_session(session, expected_revision)
            trace.add("waiting_input", node_id=current_node_id, message=decision.kind, variables=variables)
            return self._result("waiting_input", stored, steps=steps, effects=effects)

        if isinstance(decision, Suspend):
            # Job first: a stray job left by a lost write is a no-op at resume time
            await self.delay_scheduler_service.schedule_at(
                conversation_id=session.conversation_id,
                session_id=session.id,
                flow_id=session.flow_id,
                node_id=current_node_id,
                resume_at=decision.resume_at
            )
            session.status = SessionStatus.AWAITING_TIMER
            session.resume_at = decision.resume_at
            stored = await self.flow_db.update_session(session, expected_revision)
            trace.add("waiting_timer", node_id=current_node_id, message=decision.resume_at.isoformat(), variables=variables)
            return self._result("waiting_timer", stored, steps=steps, effects=effects)

        status = _OUTCOME_STATUS.get(decision.outcome, SessionStatus.FAILED)
        session.is_active = False
        session.status = status
        session.end_reason = decision.reason
        session.ended_at = self.clock()
        session.resume_at = None
        stored = await self.flow_db.update_session(session, expected_revision)
        await self.flow_db.mark_session_delays_processed(stored.id)
        trace.add("flow_complete", node_id=current_node_id, message=f"{status.value}: {decision.reason}", variables=variables)

        self.log_util.info(
            service_name="FlowExecutionService",
            message=f"[ENGINE] Session {stored.id} finished as {status.value} at node {current_node_id} (reason: {decision.reason}, steps: {steps})"
        )
        return self._result(status.value, stored, end_reason=decision.reason, steps=steps, effects=effects)
