from datetime import datetime

import pytest

from services.trigger_identification_service import TriggerIdentificationService
from models.flow_data import FlowData

from flow_fixtures import ORG_ID, OTHER_ORG_ID, CONNECTION_ID, node


@pytest.fixture
def trigger_service(log_util, flow_db):
    return TriggerIdentificationService(log_util=log_util, flow_db=flow_db)


def _start_only():
    return [node("start", "start")]


def test_exact_mode_ignores_case_but_not_extra_words(trigger_service):
    assert trigger_service.keyword_matches("oi", "Oi", "exact")
    assert not trigger_service.keyword_matches("oi", "oi tudo bem", "exact")


def test_contains_mode(trigger_service):
    assert trigger_service.keyword_matches("oi", "Oi", "contains")
    assert trigger_service.keyword_matches("oi", "oi tudo bem", "contains")
    assert not trigger_service.keyword_matches("oi", "bom dia", "contains")


def test_starts_with_mode(trigger_service):
    assert trigger_service.keyword_matches("pedido", "Pedido 123", "starts_with")
    assert not trigger_service.keyword_matches("pedido", "meu pedido", "starts_with")


def test_regex_mode_and_invalid_pattern(trigger_service):
    assert trigger_service.keyword_matches(r"^pedido\s+\d+$", "PEDIDO 42", "regex")
    assert not trigger_service.keyword_matches("([", "anything", "regex")


def test_blank_keyword_never_matches(trigger_service):
    assert not trigger_service.keyword_matches("  ", "oi", "contains")


async def test_match_trigger_filters_by_organization_and_state(trigger_service, make_flow):
    await make_flow(_start_only(), [], organization_id=OTHER_ORG_ID, keywords=["oi"])
    await make_flow(_start_only(), [], keywords=["oi"], is_active=False)

    assert await trigger_service.match_trigger(ORG_ID, CONNECTION_ID, "oi") is None

    active = await make_flow(_start_only(), [], keywords=["oi"])
    matched = await trigger_service.match_trigger(ORG_ID, CONNECTION_ID, "  Oi ")
    assert matched is not None and matched.id == active.id


async def test_match_trigger_respects_connection_filter(trigger_service, make_flow):
    await make_flow(_start_only(), [], keywords=["oi"], connection_ids=["conn_other"])
    assert await trigger_service.match_trigger(ORG_ID, CONNECTION_ID, "oi") is None

    scoped = await make_flow(_start_only(), [], keywords=["oi"], connection_ids=[CONNECTION_ID])
    matched = await trigger_service.match_trigger(ORG_ID, CONNECTION_ID, "oi")
    assert matched.id == scoped.id


async def test_empty_text_never_triggers(trigger_service, make_flow):
    await make_flow(_start_only(), [], keywords=["oi"], match_mode="contains")
    assert await trigger_service.match_trigger(ORG_ID, CONNECTION_ID, "   ") is None
    assert await trigger_service.match_trigger(ORG_ID, CONNECTION_ID, None) is None


async def test_most_recently_updated_flow_wins(trigger_service, flow_db):
    def build(name, updated_at):
        return FlowData(
            organization_id=ORG_ID,
            name=name,
            trigger_enabled=True,
            trigger_keywords=["oi"],
            is_active=True,
            is_draft=False,
            nodes=_start_only(),
            updated_at=updated_at
        )

    await flow_db.create_flow(build("older", datetime(2026, 1, 1)))
    newer = await flow_db.create_flow(build("newer", datetime(2026, 2, 1)))

    matched = await trigger_service.match_trigger(ORG_ID, CONNECTION_ID, "oi")
    assert matched.id == newer.id


async def test_draft_flow_is_not_a_candidate(trigger_service, flow_db):
    await flow_db.create_flow(FlowData(
        organization_id=ORG_ID,
        name="draft",
        trigger_enabled=True,
        trigger_keywords=["oi"],
        is_active=True,
        is_draft=True,
        nodes=_start_only()
    ))
    assert await trigger_service.match_trigger(ORG_ID, CONNECTION_ID, "oi") is None
