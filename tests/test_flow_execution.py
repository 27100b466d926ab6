import asyncio
from datetime import timedelta

import pytest

from models.flow_session_data import FlowSessionData, SessionStatus
from models.node_result_data import TransferConversationEffect
from services.internal.http_request_service import HttpRequestService
from exceptions.flow_exception import (
    ConcurrencyConflictException,
    ExternalCallException,
    FlowNotFoundException,
    FlowValidationException
)

from flow_fixtures import ORG_ID, OTHER_ORG_ID, CONNECTION_ID, node, edge, sales_menu_graph, delay_graph

CONVERSATION_ID = "conv_1"


async def _inbound(engine, text, conversation_id=CONVERSATION_ID, organization_id=ORG_ID, **kwargs):
    return await engine.handle_inbound_message(
        organization_id=organization_id,
        connection_id=CONNECTION_ID,
        conversation_id=conversation_id,
        text=text,
        **kwargs
    )


@pytest.mark.parametrize("reply", ["1", "Vendas", "vendas", "VENDAS"])
async def test_menu_reply_routes_to_transfer_and_closes_session(engine, make_flow, channel, flow_db, reply):
    nodes, edges = sales_menu_graph()
    flow = await make_flow(nodes, edges)

    started = await _inbound(engine, "oi")
    assert started.status == "waiting_input"
    assert started.flow_id == flow.id
    assert started.current_node_id == "menu"
    assert channel.texts() == ["Olá!", "Como podemos ajudar?\n\n1. Vendas\n2. Suporte"]

    finished = await _inbound(engine, reply)
    assert finished.status == "completed"
    assert finished.end_reason == "transferred"
    assert any(isinstance(effect, TransferConversationEffect) for effect in finished.effects)
    assert channel.transfers == [{"conversation_id": CONVERSATION_ID, "transfer_type": "department", "target_id": "Sales"}]

    assert await flow_db.get_active_session(CONVERSATION_ID) is None
    stored = await flow_db.get_session(finished.session_id)
    assert stored.status == SessionStatus.COMPLETED
    assert stored.ended_at is not None


async def test_other_menu_branch(engine, make_flow, channel):
    nodes, edges = sales_menu_graph()
    await make_flow(nodes, edges)

    await _inbound(engine, "oi")
    result = await _inbound(engine, "Suporte")
    assert result.status == "completed"
    assert result.end_reason == "no_outgoing_edge"
    assert channel.texts()[-1] == "Um atendente do suporte vai responder."
    assert channel.transfers == []


async def test_invalid_menu_replies_are_bounded(engine, make_flow, channel):
    nodes, edges = sales_menu_graph()
    await make_flow(nodes, edges)

    await _inbound(engine, "oi")
    retry = await _inbound(engine, "talvez")
    assert retry.status == "waiting_input"
    assert channel.texts()[-1].startswith("Opção inválida")

    exhausted = await _inbound(engine, "talvez")
    assert exhausted.status == "failed"
    assert exhausted.end_reason == "menu_max_attempts"


async def test_superscript_reply_counts_as_invalid_option(engine, make_flow, channel):
    nodes, edges = sales_menu_graph()
    await make_flow(nodes, edges)

    await _inbound(engine, "oi")
    retry = await _inbound(engine, "²")
    assert retry.status == "waiting_input"
    assert retry.current_node_id == "menu"
    assert channel.texts()[-1].startswith("Opção inválida")


async def test_message_without_trigger(engine, make_flow):
    nodes, edges = sales_menu_graph()
    await make_flow(nodes, edges)

    result = await _inbound(engine, "bom dia")
    assert result.status == "no_trigger"
    assert not result.handled


async def test_email_input_reprompts_until_valid(engine, make_flow, channel, flow_db):
    await make_flow(
        [
            node("start", "start"),
            node("ask", "input", text="Qual seu e-mail?", variable_name="email", validation="email", error_message="E-mail inválido"),
            node("thanks", "message", text="Obrigado, {email}"),
            node("end", "end"),
        ],
        [edge("start", "ask"), edge("ask", "thanks"), edge("thanks", "end")]
    )

    await _inbound(engine, "oi")
    invalid = await _inbound(engine, "not-an-email")
    assert invalid.status == "waiting_input"
    assert invalid.current_node_id == "ask"
    assert channel.texts()[-1] == "E-mail inválido"
    session = await flow_db.get_active_session(CONVERSATION_ID)
    assert session.status == SessionStatus.AWAITING_INPUT
    assert "email" not in session.variables

    valid = await _inbound(engine, "a@b.com")
    assert valid.status == "completed"
    assert valid.end_reason == "flow_end"
    assert channel.texts()[-1] == "Obrigado, a@b.com"
    stored = await flow_db.get_session(valid.session_id)
    assert stored.variables["email"] == "a@b.com"


def _webhook_flow(continue_on_error: bool):
    return (
        [
            node("start", "start"),
            node("hook", "webhook", url="https://crm.example.com/leads", response_variable="lead_id",
                 timeout=1, continue_on_error=continue_on_error),
            node("after", "message", text="Seguimos!"),
        ],
        [edge("start", "hook"), edge("hook", "after")]
    )


async def test_webhook_timeout_fails_session(engine, make_flow, http, flow_db, channel):
    await make_flow(*_webhook_flow(continue_on_error=False))
    http.error = ExternalCallException(message="Timeout calling webhook", is_timeout=True, status_code=504)

    result = await _inbound(engine, "oi")
    assert result.status == "failed"
    assert result.end_reason == "webhook_error"
    stored = await flow_db.get_session(result.session_id)
    assert stored.status == SessionStatus.FAILED
    assert not stored.is_active
    assert channel.texts() == []


async def test_webhook_timeout_continues_when_allowed(engine, make_flow, http, flow_db, channel):
    await make_flow(*_webhook_flow(continue_on_error=True))
    http.error = ExternalCallException(message="Timeout calling webhook", is_timeout=True, status_code=504)

    result = await _inbound(engine, "oi")
    assert result.status == "completed"
    assert channel.texts() == ["Seguimos!"]
    stored = await flow_db.get_session(result.session_id)
    assert "lead_id" not in stored.variables


async def test_webhook_with_accented_header_continues_when_allowed(
    engine, make_flow, node_evaluation_service, log_util, channel, monkeypatch
):
    monkeypatch.setattr(node_evaluation_service, "http_request_service", HttpRequestService(log_util=log_util))
    await make_flow(
        [
            node("start", "start"),
            node("hook", "webhook", url="https://crm.example.com/leads", timeout=1, continue_on_error=True,
                 headers=[{"key": "X-Nome", "value": "{nome}"}]),
            node("after", "message", text="Seguimos!"),
        ],
        [edge("start", "hook"), edge("hook", "after")]
    )

    result = await _inbound(engine, "oi", contact_name="João")
    assert result.status == "completed"
    assert channel.texts() == ["Seguimos!"]


async def test_delay_resumes_once_when_due(engine, make_flow, clock, channel, flow_db):
    await make_flow(*delay_graph())
    scheduler = engine.delay_scheduler_service

    suspended = await _inbound(engine, "oi")
    assert suspended.status == "waiting_timer"
    assert suspended.current_node_id == "wait"

    clock.advance(4)
    assert await scheduler.process_due_delays() == 0
    early = await engine.resume_from_timer(CONVERSATION_ID, suspended.session_id, "wait")
    assert early.status == "ignored"
    assert early.end_reason == "not_due"
    assert channel.texts() == []

    clock.advance(1)
    assert await scheduler.process_due_delays() == 1
    assert channel.texts() == ["Pronto"]
    stored = await flow_db.get_session(suspended.session_id)
    assert stored.status == SessionStatus.COMPLETED

    # Duplicate delivery of the same timer
    duplicate = await engine.resume_from_timer(CONVERSATION_ID, suspended.session_id, "wait")
    assert duplicate.status == "ignored"
    assert await scheduler.process_due_delays() == 0
    assert channel.texts() == ["Pronto"]


async def test_inbound_message_does_not_skip_delay(engine, make_flow, channel):
    await make_flow(*delay_graph())
    await _inbound(engine, "oi")

    result = await _inbound(engine, "oi")
    assert result.status == "ignored"
    assert result.current_node_id == "wait"
    assert channel.texts() == []


async def test_cancelled_session_ignores_timer(engine, make_flow, clock, channel):
    await make_flow(*delay_graph())
    suspended = await _inbound(engine, "oi")

    cancelled = await engine.cancel_session(ORG_ID, CONVERSATION_ID, reason="agent_takeover")
    assert cancelled.status == "cancelled"
    assert cancelled.end_reason == "agent_takeover"

    clock.advance(10)
    assert await engine.delay_scheduler_service.process_due_delays() == 0
    late = await engine.resume_from_timer(CONVERSATION_ID, suspended.session_id, "wait")
    assert late.status == "ignored"
    assert channel.texts() == []


async def test_cycle_hits_step_bound(engine, make_flow, channel):
    engine.max_steps = 5
    await make_flow(
        [node("start", "start"), node("m1", "message", text="um"), node("m2", "message", text="dois")],
        [edge("start", "m1"), edge("m1", "m2"), edge("m2", "m1")]
    )

    result = await _inbound(engine, "oi")
    assert result.status == "failed"
    assert result.end_reason == "flow_loop_detected"
    assert result.steps == engine.max_steps + 1
    assert len(channel.texts()) == engine.max_steps


async def test_node_removed_while_waiting_fails_session(engine, make_flow, flow_service, flow_db):
    nodes, edges = sales_menu_graph()
    flow = await make_flow(nodes, edges)
    waiting = await _inbound(engine, "oi")

    await flow_service.save_canvas(ORG_ID, flow.id, nodes=[node("start", "start")], edges=[], editor_id="user_1")

    result = await _inbound(engine, "1")
    assert result.status == "failed"
    assert result.end_reason == "node_not_found"
    stored = await flow_db.get_session(waiting.session_id)
    assert stored.status == SessionStatus.FAILED


async def test_concurrent_replies_are_serialized(engine, make_flow, channel, flow_db):
    nodes, edges = sales_menu_graph()
    await make_flow(nodes, edges)
    await _inbound(engine, "oi")

    results = await asyncio.gather(*[_inbound(engine, "1") for _ in range(5)])
    statuses = sorted(result.status for result in results)
    assert statuses == ["completed", "no_trigger", "no_trigger", "no_trigger", "no_trigger"]
    assert len(channel.transfers) == 1
    assert await flow_db.get_active_session(CONVERSATION_ID) is None


async def test_conflict_is_retried_once(engine, make_flow, flow_db, channel, monkeypatch):
    nodes, edges = sales_menu_graph()
    await make_flow(nodes, edges)
    await _inbound(engine, "oi")

    original_update = flow_db.update_session
    calls = {"count": 0}

    async def flaky_update(session, expected_revision):
        calls["count"] += 1
        if calls["count"] == 1:
            raise ConcurrencyConflictException(message="simulated race")
        return await original_update(session, expected_revision)

    monkeypatch.setattr(flow_db, "update_session", flaky_update)
    result = await _inbound(engine, "1")
    assert result.status == "completed"
    assert calls["count"] == 2
    assert len(channel.transfers) == 1


async def test_persistent_conflict_is_reported(engine, make_flow, flow_db, channel, monkeypatch):
    nodes, edges = sales_menu_graph()
    await make_flow(nodes, edges)
    await _inbound(engine, "oi")

    async def always_conflict(session, expected_revision):
        raise ConcurrencyConflictException(message="simulated race")

    monkeypatch.setattr(flow_db, "update_session", always_conflict)
    result = await _inbound(engine, "1")
    assert result.status == "conflict"
    assert channel.transfers == []

    session = await flow_db.get_active_session(CONVERSATION_ID)
    assert session.status == SessionStatus.AWAITING_INPUT
    assert session.current_node_id == "menu"


async def test_other_organization_cannot_drive_session(engine, make_flow):
    nodes, edges = sales_menu_graph()
    await make_flow(nodes, edges)
    await _inbound(engine, "oi")

    result = await _inbound(engine, "1", organization_id=OTHER_ORG_ID)
    assert result.status == "ignored"

    with pytest.raises(FlowNotFoundException):
        await engine.cancel_session(OTHER_ORG_ID, CONVERSATION_ID)


async def test_stale_running_session_is_replaced(engine, make_flow, flow_db, clock):
    nodes, edges = sales_menu_graph()
    flow = await make_flow(nodes, edges)
    stale = await flow_db.create_session(FlowSessionData(
        conversation_id=CONVERSATION_ID,
        organization_id=ORG_ID,
        flow_id=flow.id,
        status=SessionStatus.RUNNING,
        updated_at=clock.now - timedelta(minutes=10)
    ))

    result = await _inbound(engine, "oi")
    assert result.status == "waiting_input"
    assert result.session_id != stale.id
    old = await flow_db.get_session(stale.id)
    assert old.status == SessionStatus.FAILED
    assert old.end_reason == "stale_session"


async def test_fresh_running_session_is_left_alone(engine, make_flow, flow_db, clock):
    nodes, edges = sales_menu_graph()
    flow = await make_flow(nodes, edges)
    await flow_db.create_session(FlowSessionData(
        conversation_id=CONVERSATION_ID,
        organization_id=ORG_ID,
        flow_id=flow.id,
        status=SessionStatus.RUNNING,
        updated_at=clock.now
    ))

    result = await _inbound(engine, "oi")
    assert result.status == "ignored"


async def test_manual_start_replaces_active_session(engine, make_flow, flow_db, channel):
    nodes, edges = sales_menu_graph()
    await make_flow(nodes, edges)
    greeting = await make_flow(
        [node("start", "start"), node("hello", "message", text="Olá {nome}, pedido {pedido}")],
        [edge("start", "hello")],
        keywords=[]
    )
    first = await _inbound(engine, "oi")

    result = await engine.start_flow(
        organization_id=ORG_ID,
        flow_id=greeting.id,
        conversation_id=CONVERSATION_ID,
        started_by="agent_1",
        variables={"pedido": "77"},
        contact_name="Ana"
    )
    assert result.status == "completed"
    assert channel.texts()[-1] == "Olá Ana, pedido 77"

    replaced = await flow_db.get_session(first.session_id)
    assert replaced.status == SessionStatus.CANCELLED
    assert replaced.end_reason == "replaced"
    manual = await flow_db.get_session(result.session_id)
    assert manual.started_by == "agent_1"


async def test_manual_start_rejects_missing_or_inactive_flow(engine, make_flow):
    inactive = await make_flow([node("start", "start")], [], is_active=False)

    with pytest.raises(FlowNotFoundException):
        await engine.start_flow(ORG_ID, "missing", CONVERSATION_ID)
    with pytest.raises(FlowNotFoundException):
        await engine.start_flow(OTHER_ORG_ID, inactive.id, CONVERSATION_ID)
    with pytest.raises(FlowValidationException):
        await engine.start_flow(ORG_ID, inactive.id, CONVERSATION_ID)


async def test_disabling_flow_cancels_its_sessions(engine, make_flow, flow_service, flow_db):
    nodes, edges = sales_menu_graph()
    flow = await make_flow(nodes, edges)
    waiting = await _inbound(engine, "oi")

    toggled = await flow_service.toggle_flow(ORG_ID, flow.id)
    assert not toggled.is_active

    stored = await flow_db.get_session(waiting.session_id)
    assert stored.status == SessionStatus.CANCELLED
    assert stored.end_reason == "flow_disabled"
    with pytest.raises(FlowNotFoundException):
        await engine.get_active_session(ORG_ID, CONVERSATION_ID)


async def test_execution_trace_is_recorded(engine, make_flow, execution_log_service):
    nodes, edges = sales_menu_graph()
    await make_flow(nodes, edges)
    await _inbound(engine, "oi")
    await _inbound(engine, "1")

    logs = await execution_log_service.get_logs(ORG_ID, CONVERSATION_ID)
    assert logs[0].log_type == "flow_complete"
    log_types = {log.log_type for log in logs}
    assert {"node_start", "transition", "waiting_input", "flow_complete"} <= log_types
    transitions = [(log.from_node_id, log.to_node_id) for log in logs if log.log_type == "transition"]
    assert ("menu", "A") in transitions

    assert await execution_log_service.clear_logs(ORG_ID, CONVERSATION_ID) == len(logs)
    assert await execution_log_service.get_logs(ORG_ID, CONVERSATION_ID) == []
