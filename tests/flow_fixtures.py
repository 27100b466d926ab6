"""
Builders for flow graphs used across the test modules.
"""
from typing import Optional, Dict, Any

ORG_ID = "org_1"
OTHER_ORG_ID = "org_2"
CONNECTION_ID = "conn_1"


def node(node_id: str, node_type: str, **content) -> Dict[str, Any]:
    return {"node_id": node_id, "node_type": node_type, "content": content}


def edge(source: str, target: str, handle: Optional[str] = None, label: Optional[str] = None) -> Dict[str, Any]:
    return {
        "edge_id": f"{source}-{handle or 'out'}-{target}",
        "source_node_id": source,
        "target_node_id": target,
        "source_handle": handle,
        "label": label,
    }


def sales_menu_graph():
    """start -> message("Olá!") -> menu(Vendas -> A, Suporte -> B), A transfers to Sales."""
    nodes = [
        node("start", "start"),
        node("welcome", "message", text="Olá!"),
        node("menu", "menu", text="Como podemos ajudar?", options=[
            {"id": "opt_sales", "label": "Vendas", "value": "vendas"},
            {"id": "opt_support", "label": "Suporte", "value": "suporte"},
        ], max_attempts=2),
        node("A", "transfer", transfer_type="department", department_id="Sales", end_flow=True),
        node("B", "message", text="Um atendente do suporte vai responder."),
    ]
    edges = [
        edge("start", "welcome"),
        edge("welcome", "menu"),
        edge("menu", "A", handle="opt_sales"),
        edge("menu", "B", handle="opt_support"),
    ]
    return nodes, edges


def delay_graph(seconds: int = 5):
    """start -> delay(seconds) -> message("Pronto")."""
    nodes = [
        node("start", "start"),
        node("wait", "delay", duration=seconds, unit="seconds"),
        node("done", "message", text="Pronto"),
    ]
    return nodes, [edge("start", "wait"), edge("wait", "done")]
