import pytest

from models.request.flow_request import FlowCreateRequest, FlowUpdateRequest
from exceptions.flow_exception import (
    ConcurrencyConflictException,
    FlowNotFoundException,
    FlowValidationException
)

from flow_fixtures import ORG_ID, OTHER_ORG_ID, CONNECTION_ID, node, edge, sales_menu_graph


async def _create(flow_service, name="Boas-vindas", **kwargs):
    return await flow_service.create_flow(ORG_ID, "user_1", FlowCreateRequest(name=name, **kwargs))


async def test_create_flow_seeds_start_node(flow_service):
    flow = await _create(flow_service, trigger_keywords=["oi"])
    assert flow.id
    assert flow.is_draft and not flow.is_active
    assert flow.version == 1
    assert [(n.node_id, n.node_type) for n in flow.nodes] == [("start", "start")]
    assert flow.last_edited_by == "user_1"


async def test_canvas_round_trip(flow_service):
    flow = await _create(flow_service)
    nodes, edges = sales_menu_graph()

    saved = await flow_service.save_canvas(ORG_ID, flow.id, nodes, edges, editor_id="user_2")
    assert saved.version == 2
    assert not saved.is_draft
    assert saved.last_edited_by == "user_2"

    canvas = await flow_service.get_canvas(ORG_ID, flow.id)
    assert canvas["version"] == 2
    assert {n["node_id"]: n["node_type"] for n in canvas["nodes"]} == {n["node_id"]: n["node_type"] for n in nodes}
    assert {(e["source_node_id"], e["target_node_id"], e["source_handle"]) for e in canvas["edges"]} == {
        (e["source_node_id"], e["target_node_id"], e["source_handle"]) for e in edges
    }
    menu = next(n for n in canvas["nodes"] if n["node_id"] == "menu")
    assert [option["label"] for option in menu["content"]["options"]] == ["Vendas", "Suporte"]

    # Saving what was read back changes nothing but the version
    again = await flow_service.save_canvas(ORG_ID, flow.id, canvas["nodes"], canvas["edges"], editor_id="user_2")
    assert (await flow_service.get_canvas(ORG_ID, flow.id))["nodes"] == canvas["nodes"]
    assert again.version == 3


async def test_editor_shape_is_accepted(flow_service):
    flow = await _create(flow_service)
    saved = await flow_service.save_canvas(
        ORG_ID,
        flow.id,
        nodes=[
            {"id": "start", "type": "start", "data": {"label": "Início"}, "position": {"x": 0, "y": 0}},
            {"id": "hello", "type": "message", "data": {"label": "Saudação", "text": "Oi {nome}"}},
        ],
        edges=[{"source": "start", "target": "hello"}],
        editor_id=None
    )
    hello = next(n for n in saved.nodes if n.node_id == "hello")
    assert hello.name == "Saudação"
    assert hello.content.text == "Oi {nome}"
    assert saved.edges[0].edge_id == "e_start_out_hello"


@pytest.mark.parametrize("nodes,edges,fragment", [
    ([node("hello", "message", text="oi")], [], "start node"),
    ([node("start", "start"), node("start2", "start")], [], "start node"),
    ([node("begin", "start")], [], "start node"),
    ([node("start", "start"), node("a", "message"), node("a", "message")], [], "Duplicate node"),
    ([node("start", "start")], [edge("start", "ghost")], "unknown target"),
    ([node("start", "start"), node("a", "message")], [edge("a", "start")], "cannot target the start"),
    ([node("start", "start"), node("a", "action")], [], "Invalid flow graph"),
    ([node("start", "start"), node("a", "teleport")], [], "Invalid flow graph"),
])
async def test_invalid_graph_is_rejected(flow_service, nodes, edges, fragment):
    flow = await _create(flow_service)
    with pytest.raises(FlowValidationException) as error:
        await flow_service.save_canvas(ORG_ID, flow.id, nodes, edges, editor_id=None)
    assert fragment in error.value.message

    unchanged = await flow_service.get_flow_detail(ORG_ID, flow.id)
    assert unchanged.version == 1


async def test_gallery_with_more_than_ten_images_is_rejected(flow_service):
    flow = await _create(flow_service)
    images = [{"url": f"https://cdn.example.com/{index}.png"} for index in range(11)]
    nodes = [node("start", "start"), node("g", "message", media_type="gallery", gallery_images=images)]

    with pytest.raises(FlowValidationException) as error:
        await flow_service.save_canvas(ORG_ID, flow.id, nodes, [edge("start", "g")], editor_id=None)
    assert "Invalid flow graph" in error.value.message

    nodes[1]["content"]["gallery_images"] = images[:10]
    saved = await flow_service.save_canvas(ORG_ID, flow.id, nodes, [edge("start", "g")], editor_id=None)
    gallery = next(n for n in saved.nodes if n.node_id == "g")
    assert len(gallery.content.gallery_images) == 10


async def test_versions_snapshot_previous_graph_and_restore(flow_service):
    flow = await _create(flow_service)
    nodes, edges = sales_menu_graph()
    await flow_service.save_canvas(ORG_ID, flow.id, nodes, edges, editor_id="user_1")
    await flow_service.save_canvas(ORG_ID, flow.id, [node("start", "start")], [], editor_id="user_1")

    versions = await flow_service.get_flow_versions(ORG_ID, flow.id)
    assert [v.version for v in versions] == [2, 1]
    snapshot = await flow_service.get_flow_version(ORG_ID, flow.id, 2)
    assert len(snapshot.nodes_data) == len(nodes)

    restored = await flow_service.restore_version(ORG_ID, flow.id, 2, editor_id="user_3")
    assert restored.version == 4
    assert {n.node_id for n in restored.nodes} == {n["node_id"] for n in nodes}

    with pytest.raises(FlowNotFoundException):
        await flow_service.get_flow_version(ORG_ID, flow.id, 99)


async def test_concurrent_canvas_save_conflicts(flow_service, flow_db):
    flow = await _create(flow_service)
    # Another editor saved after this one read version 1
    await flow_db.replace_flow_graph(flow.id, 1, [node("start", "start")], [], "user_other")

    original_get = flow_db.get_flow_for_organization

    async def stale_read(organization_id, flow_id):
        stale = await original_get(organization_id, flow_id)
        stale.version = 1
        return stale

    flow_db.get_flow_for_organization = stale_read
    with pytest.raises(ConcurrencyConflictException):
        await flow_service.save_canvas(ORG_ID, flow.id, [node("start", "start")], [], editor_id="user_1")


async def test_update_and_list(flow_service):
    first = await _create(flow_service, name="Primeiro")
    second = await _create(flow_service, name="Segundo")

    updated = await flow_service.update_flow(ORG_ID, first.id, FlowUpdateRequest(
        trigger_enabled=True,
        trigger_keywords=["menu"],
        trigger_match_mode="contains",
        is_active=True
    ))
    assert updated.trigger_keywords == ["menu"]
    assert updated.trigger_match_mode == "contains"
    assert updated.is_active
    assert updated.name == "Primeiro"

    listed = await flow_service.get_flows_list(ORG_ID)
    assert [flow.id for flow in listed] == [first.id, second.id]
    assert await flow_service.get_flows_list(OTHER_ORG_ID) == []


async def test_tenant_isolation(flow_service):
    flow = await _create(flow_service)
    with pytest.raises(FlowNotFoundException):
        await flow_service.get_flow_detail(OTHER_ORG_ID, flow.id)
    with pytest.raises(FlowNotFoundException):
        await flow_service.save_canvas(OTHER_ORG_ID, flow.id, [node("start", "start")], [], editor_id=None)
    with pytest.raises(FlowNotFoundException):
        await flow_service.delete_flow(OTHER_ORG_ID, flow.id)


async def test_duplicate_flow(flow_service):
    flow = await _create(flow_service, trigger_enabled=True, trigger_keywords=["oi"])
    nodes, edges = sales_menu_graph()
    await flow_service.save_canvas(ORG_ID, flow.id, nodes, edges, editor_id="user_1")

    copy = await flow_service.duplicate_flow(ORG_ID, flow.id, editor_id="user_2")
    assert copy.id != flow.id
    assert copy.name == "Boas-vindas (copy)"
    assert not copy.trigger_enabled and not copy.is_active and copy.is_draft
    assert copy.version == 1
    assert len(copy.nodes) == len(nodes)


async def test_delete_flow(flow_service):
    flow = await _create(flow_service)
    assert await flow_service.delete_flow(ORG_ID, flow.id)
    with pytest.raises(FlowNotFoundException):
        await flow_service.get_flow_detail(ORG_ID, flow.id)


async def test_available_flows_for_connection(flow_service):
    everywhere = await _create(flow_service, name="Todos")
    scoped = await _create(flow_service, name="Outra conexão", connection_ids=["conn_other"])
    draft = await _create(flow_service, name="Rascunho")

    for flow in (everywhere, scoped):
        await flow_service.save_canvas(ORG_ID, flow.id, [node("start", "start")], [], editor_id=None)
        await flow_service.toggle_flow(ORG_ID, flow.id)
    await flow_service.toggle_flow(ORG_ID, draft.id)

    available = await flow_service.get_available_flows(ORG_ID, CONNECTION_ID)
    assert [flow.id for flow in available] == [everywhere.id]
