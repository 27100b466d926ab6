from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any

import pytest

# Utils
from utils.log_utils import LogUtil

# Database
from database.memory_flow_db import MemoryFlowDB

# Services
from services.reply_validation_service import ReplyValidationService
from services.node_evaluation_service import NodeEvaluationService
from services.effect_dispatch_service import EffectDispatchService
from services.execution_log_service import ExecutionLogService
from services.delay_scheduler_service import DelaySchedulerService
from services.trigger_identification_service import TriggerIdentificationService
from services.flow_execution_service import FlowExecutionService
from services.flow_service import FlowService

# Models
from models.flow_data import FlowData
from models.node_result_data import HttpCallResult

from flow_fixtures import ORG_ID


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime.utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeChannelService:
    def __init__(self):
        self.messages: List[Dict[str, Any]] = []
        self.typing: List[str] = []
        self.external: List[Dict[str, str]] = []
        self.transfers: List[Dict[str, Any]] = []
        self.closed: List[str] = []
        self.history: List[Dict[str, str]] = []

    async def send_message(self, conversation_id, text, message_type="text", media_url=None):
        self.messages.append({
            "conversation_id": conversation_id,
            "text": text,
            "message_type": message_type,
            "media_url": media_url,
        })

    async def send_typing(self, conversation_id, duration_seconds):
        self.typing.append(conversation_id)

    async def send_external_message(self, conversation_id, phone_number, text):
        self.external.append({"phone_number": phone_number, "text": text})

    async def transfer_conversation(self, conversation_id, transfer_type, target_id):
        self.transfers.append({"conversation_id": conversation_id, "transfer_type": transfer_type, "target_id": target_id})

    async def close_conversation(self, conversation_id):
        self.closed.append(conversation_id)

    async def get_history(self, conversation_id, limit=10):
        return list(self.history)[-limit:]

    def texts(self, conversation_id: Optional[str] = None) -> List[str]:
        return [
            message["text"] for message in self.messages
            if conversation_id is None or message["conversation_id"] == conversation_id
        ]


class FakeCRMService:
    def __init__(self):
        self.tags: List[tuple] = []
        self.tasks: List[Dict[str, Any]] = []
        self.notifications: List[str] = []

    async def add_tag(self, organization_id, conversation_id, tag_id):
        self.tags.append(("add", conversation_id, tag_id))

    async def remove_tag(self, organization_id, conversation_id, tag_id):
        self.tags.append(("remove", conversation_id, tag_id))

    async def create_task(self, organization_id, conversation_id, title, description="", due_in_days=None):
        self.tasks.append({"title": title, "description": description, "due_in_days": due_in_days})

    async def notify_users(self, organization_id, conversation_id, message):
        self.notifications.append(message)


class FakeEmailService:
    def __init__(self):
        self.sent: List[Dict[str, str]] = []

    async def send(self, organization_id, to, subject, html):
        self.sent.append({"to": to, "subject": subject, "html": html})


class FakeAIService:
    def __init__(self):
        self.reply = "Posso ajudar com isso."
        self.error: Optional[Exception] = None
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, messages, model=None, temperature=0.7, timeout=None):
        self.calls.append({"messages": messages, "model": model, "temperature": temperature})
        if self.error is not None:
            raise self.error
        return self.reply


class FakeHttpRequestService:
    def __init__(self):
        self.result = HttpCallResult(status_code=200, body="{}", json_body={})
        self.error: Optional[Exception] = None
        self.calls: List[Dict[str, Any]] = []

    async def call(self, method, url, headers=None, body=None, timeout=30):
        self.calls.append({"method": method, "url": url, "headers": headers, "body": body, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.result


async def _no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def log_util():
    return LogUtil(logger_name="flow_automation_engine_tests")


@pytest.fixture
def flow_db(log_util):
    return MemoryFlowDB(log_util=log_util)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def channel():
    return FakeChannelService()


@pytest.fixture
def crm():
    return FakeCRMService()


@pytest.fixture
def email():
    return FakeEmailService()


@pytest.fixture
def ai():
    return FakeAIService()


@pytest.fixture
def http():
    return FakeHttpRequestService()


@pytest.fixture
def reply_validation_service(log_util):
    return ReplyValidationService(log_util=log_util)


@pytest.fixture
def node_evaluation_service(log_util, reply_validation_service, ai, http, channel):
    return NodeEvaluationService(
        log_util=log_util,
        reply_validation_service=reply_validation_service,
        ai_service=ai,
        http_request_service=http,
        channel_service=channel
    )


@pytest.fixture
def execution_log_service(log_util, flow_db):
    return ExecutionLogService(log_util=log_util, flow_db=flow_db)


@pytest.fixture
def engine(log_util, flow_db, node_evaluation_service, execution_log_service, channel, crm, email, clock):
    effect_dispatch_service = EffectDispatchService(
        log_util=log_util,
        channel_service=channel,
        crm_service=crm,
        email_service=email,
        sleep=_no_sleep
    )
    delay_scheduler_service = DelaySchedulerService(log_util=log_util, flow_db=flow_db, clock=clock)
    flow_execution_service = FlowExecutionService(
        log_util=log_util,
        flow_db=flow_db,
        trigger_identification_service=TriggerIdentificationService(log_util=log_util, flow_db=flow_db),
        node_evaluation_service=node_evaluation_service,
        effect_dispatch_service=effect_dispatch_service,
        execution_log_service=execution_log_service,
        delay_scheduler_service=delay_scheduler_service,
        clock=clock
    )
    delay_scheduler_service.flow_execution_service = flow_execution_service
    return flow_execution_service


@pytest.fixture
def flow_service(log_util, flow_db, engine):
    return FlowService(log_util=log_util, flow_db=flow_db, flow_execution_service=engine)


@pytest.fixture
def make_flow(flow_db):
    async def _make_flow(
        nodes,
        edges,
        organization_id: str = ORG_ID,
        keywords=("oi",),
        match_mode: str = "exact",
        connection_ids=None,
        is_active: bool = True,
        name: str = "Atendimento"
    ) -> FlowData:
        return await flow_db.create_flow(FlowData(
            organization_id=organization_id,
            name=name,
            trigger_enabled=bool(keywords),
            trigger_keywords=list(keywords),
            trigger_match_mode=match_mode,
            connection_ids=list(connection_ids or []),
            is_active=is_active,
            is_draft=False,
            nodes=nodes,
            edges=edges
        ))
    return _make_flow
