"""
Delay Scheduler Service
Durable timer for delay nodes. Timer jobs live in the delays collection, so a
suspended session survives restarts. A background loop resumes due sessions.
"""
import asyncio
import traceback
from typing import Optional, Callable, TYPE_CHECKING
from datetime import datetime

from utils.log_utils import LogUtil
from database.flow_db_base import BaseFlowDB
from models.delay_data import DelayData

if TYPE_CHECKING:
    from services.flow_execution_service import FlowExecutionService


class DelaySchedulerService:
    """
    Background service that polls due delay jobs and resumes their sessions.

    Delivery is at-least-once: a job is marked processed only after the resume call
    returns, and the engine's resume check turns duplicate fires into no-ops.
    """

    def __init__(
        self,
        log_util: LogUtil,
        flow_db: BaseFlowDB,
        flow_execution_service: Optional["FlowExecutionService"] = None,
        check_interval_seconds: int = 5,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.log_util = log_util
        self.flow_db = flow_db
        self.flow_execution_service = flow_execution_service
        self.check_interval_seconds = check_interval_seconds
        self.clock = clock or datetime.utcnow
        self._running = False
        self._task = None

    async def schedule_at(
        self,
        conversation_id: str,
        session_id: str,
        flow_id: str,
        node_id: str,
        resume_at: datetime
    ) -> DelayData:
        delay = await self.flow_db.save_delay(DelayData(
            conversation_id=conversation_id,
            session_id=session_id,
            flow_id=flow_id,
            node_id=node_id,
            resume_at=resume_at
        ))
        self.log_util.info(
            service_name="DelaySchedulerService",
            message=f"[DELAY_SCHEDULER] Scheduled resume of session {session_id} at node {node_id} for {resume_at.isoformat()}"
        )
        return delay

    async def start(self):
        """
        Start the background scheduler task.
        """
        if self._running:
            self.log_util.warning(
                service_name="DelaySchedulerService",
                message="Scheduler is already running"
            )
            return

        self._running = True
        self._task = asyncio.create_task(self._scheduler_loop())
        self.log_util.info(
            service_name="DelaySchedulerService",
            message=f"Delay scheduler started, checking every {self.check_interval_seconds} seconds"
        )

    async def stop(self):
        """
        Stop the background scheduler task.
        """
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.log_util.info(
            service_name="DelaySchedulerService",
            message="Delay scheduler stopped"
        )

    async def _scheduler_loop(self):
        """
        Main scheduler loop that checks for due delays and resumes their sessions.
        """
        while self._running:
            try:
                await self.process_due_delays()
                await asyncio.sleep(self.check_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.log_util.error(
                    service_name="DelaySchedulerService",
                    message=f"Error in scheduler loop: {str(e)}\n{traceback.format_exc()}"
                )
                # Wait before retrying to avoid tight error loop
                await asyncio.sleep(self.check_interval_seconds)

    async def process_due_delays(self) -> int:
        """
        Resume every session whose delay is due. Returns the number of jobs handled.
        """
        if self.flow_execution_service is None:
            self.log_util.error(
                service_name="DelaySchedulerService",
                message="FlowExecutionService not initialized, cannot resume delayed sessions"
            )
            return 0

        pending_delays = await self.flow_db.get_pending_delays(self.clock())
        if not pending_delays:
            return 0

        self.log_util.info(
            service_name="DelaySchedulerService",
            message=f"[DELAY_SCHEDULER] Found {len(pending_delays)} due delay(s) to process"
        )

        handled = 0
        for delay in pending_delays:
            try:
                result = await self.flow_execution_service.resume_from_timer(
                    conversation_id=delay.conversation_id,
                    session_id=delay.session_id,
                    node_id=delay.node_id
                )
                if result.status == "conflict":
                    # Leave the job pending, the next poll retries it
                    continue
                await self.flow_db.mark_delay_as_processed(delay.id)
                handled += 1
                self.log_util.info(
                    service_name="DelaySchedulerService",
                    message=f"[DELAY_SCHEDULER] Delay {delay.id} processed for session {delay.session_id} (result: {result.status})"
                )
            except Exception as e:
                self.log_util.error(
                    service_name="DelaySchedulerService",
                    message=f"Error processing delay {delay.id}: {str(e)}\n{traceback.format_exc()}"
                )
        return handled
