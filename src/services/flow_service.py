from typing import Optional, List, Dict, Any, Tuple, TYPE_CHECKING
from pydantic import ValidationError

# Utils
from utils.log_utils import LogUtil

# Database
from database.flow_db_base import BaseFlowDB

# Models
from models.flow_data import FlowData
from models.flow_node_data import FlowNodeListAdapter, StartNode, START_NODE_ID
from models.flow_edge_data import FlowEdge
from models.flow_version_data import FlowVersionData
from models.request.flow_request import FlowCreateRequest, FlowUpdateRequest

# Exceptions
from exceptions.flow_exception import (
    FlowException,
    FlowServiceException,
    FlowNotFoundException,
    FlowValidationException,
    ConcurrencyConflictException
)

if TYPE_CHECKING:
    from services.flow_execution_service import FlowExecutionService

# Flow settings that may be changed through update_flow
UPDATABLE_FIELDS = (
    "name", "description", "trigger_enabled", "trigger_keywords",
    "trigger_match_mode", "connection_ids", "is_active", "is_draft"
)


def normalize_node(node: Dict[str, Any]) -> Dict[str, Any]:
    """
    Accept a node either in stored shape (node_id/node_type/content) or in the
    editor's shape (id/type/data) and return the stored shape.
    """
    if "node_id" in node and "node_type" in node:
        return dict(node)

    data = node.get("data") or {}
    content = data.get("content")
    if content is None:
        content = {key: value for key, value in data.items() if key not in ("label", "name")}
    normalized = {
        "node_id": node.get("id"),
        "node_type": node.get("type") or data.get("node_type"),
        "name": data.get("label") or data.get("name") or node.get("name") or "",
        "content": content,
    }
    if node.get("position") is not None:
        normalized["position"] = node.get("position")
    return normalized


def normalize_edge(edge: Dict[str, Any]) -> Dict[str, Any]:
    """
    Same as normalize_node for edges (id/source/target/sourceHandle/targetHandle).
    """
    if "source_node_id" in edge and "target_node_id" in edge:
        normalized = dict(edge)
    else:
        normalized = {
            "edge_id": edge.get("id"),
            "source_node_id": edge.get("source"),
            "target_node_id": edge.get("target"),
            "source_handle": edge.get("sourceHandle"),
            "target_handle": edge.get("targetHandle"),
            "label": edge.get("label"),
            "edge_type": edge.get("type") or "default",
        }
    if not normalized.get("edge_id"):
        normalized["edge_id"] = f"e_{normalized.get('source_node_id')}_{normalized.get('source_handle') or 'out'}_{normalized.get('target_node_id')}"
    return normalized


class FlowService:
    def __init__(
        self,
        log_util: LogUtil,
        flow_db: BaseFlowDB,
        flow_execution_service: Optional["FlowExecutionService"] = None
    ):
        self.log_util = log_util
        self.flow_db = flow_db
        self.flow_execution_service = flow_execution_service

    async def _get_owned_flow(self, organization_id: str, flow_id: str) -> FlowData:
        flow = await self.flow_db.get_flow_for_organization(organization_id, flow_id)
        if flow is None:
            raise FlowNotFoundException(message=f"Flow {flow_id} not found")
        return flow

    async def _cancel_flow_sessions(self, flow_id: str, reason: str) -> int:
        if self.flow_execution_service is None:
            return 0
        return await self.flow_execution_service.cancel_flow_sessions(flow_id, reason=reason)

    def validate_graph(
        self,
        nodes: List[Dict[str, Any]],
        edges: List[Dict[str, Any]]
    ) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """
        Validate a replacement graph and return it as plain dicts in stored shape.

        Rules:
        - node content must match its node type
        - exactly one start node, with node_id "start"
        - node ids unique
        - every edge endpoint exists and no edge points back into start
        """
        try:
            parsed_nodes = FlowNodeListAdapter.validate_python([normalize_node(node) for node in nodes])
            parsed_edges = [FlowEdge.model_validate(normalize_edge(edge)) for edge in edges]
        except ValidationError as e:
            raise FlowValidationException(message=f"Invalid flow graph: {e.errors(include_url=False)}")

        node_ids = set()
        start_nodes = []
        for node in parsed_nodes:
            if node.node_id in node_ids:
                raise FlowValidationException(message=f"Duplicate node id '{node.node_id}'")
            node_ids.add(node.node_id)
            if node.node_type == "start":
                start_nodes.append(node)

        if len(start_nodes) != 1 or start_nodes[0].node_id != START_NODE_ID:
            raise FlowValidationException(
                message=f"Flow must contain exactly one start node with id '{START_NODE_ID}'"
            )

        edge_ids = set()
        for edge in parsed_edges:
            if edge.edge_id in edge_ids:
                raise FlowValidationException(message=f"Duplicate edge id '{edge.edge_id}'")
            edge_ids.add(edge.edge_id)
            if edge.source_node_id not in node_ids:
                raise FlowValidationException(
                    message=f"Edge '{edge.edge_id}' references unknown source node '{edge.source_node_id}'"
                )
            if edge.target_node_id not in node_ids:
                raise FlowValidationException(
                    message=f"Edge '{edge.edge_id}' references unknown target node '{edge.target_node_id}'"
                )
            if edge.target_node_id == START_NODE_ID:
                raise FlowValidationException(message=f"Edge '{edge.edge_id}' cannot target the start node")

        return (
            [node.model_dump(mode="json") for node in parsed_nodes],
            [edge.model_dump(mode="json") for edge in parsed_edges]
        )

    async def create_flow(self, organization_id: str, user_id: Optional[str], request: FlowCreateRequest) -> FlowData:
        """
        Create a new draft flow seeded with a start node
        """
        try:
            flow = FlowData(
                organization_id=organization_id,
                name=request.name,
                description=request.description,
                trigger_enabled=request.trigger_enabled,
                trigger_keywords=request.trigger_keywords,
                trigger_match_mode=request.trigger_match_mode,
                connection_ids=request.connection_ids,
                is_active=False,
                is_draft=True,
                version=1,
                nodes=[StartNode(node_id=START_NODE_ID, node_type="start", name="Início")],
                edges=[],
                last_edited_by=user_id
            )
            saved_flow = await self.flow_db.create_flow(flow)

            self.log_util.info(
                service_name="FlowService",
                message=f"Flow '{saved_flow.name}' created successfully with ID: {saved_flow.id}"
            )
            return saved_flow

        except FlowException:
            raise
        except Exception as e:
            self.log_util.error(
                service_name="FlowService",
                message=f"Error creating flow: {str(e)}"
            )
            raise FlowServiceException(message=f"Error creating flow: {str(e)}")

    async def get_flows_list(self, organization_id: str) -> List[FlowData]:
        """
        Get list of flows for an organization, most recently updated first
        """
        try:
            return await self.flow_db.get_flows_by_organization(organization_id)
        except FlowException:
            raise
        except Exception as e:
            self.log_util.error(
                service_name="FlowService",
                message=f"Error getting flows list: {str(e)}"
            )
            raise FlowServiceException(message=f"Error getting flows list: {str(e)}")

    async def get_flow_detail(self, organization_id: str, flow_id: str) -> FlowData:
        return await self._get_owned_flow(organization_id, flow_id)

    async def update_flow(self, organization_id: str, flow_id: str, request: FlowUpdateRequest) -> FlowData:
        """
        Update flow settings. The graph itself only changes through save_canvas.
        """
        try:
            existing_flow = await self._get_owned_flow(organization_id, flow_id)

            fields = {
                key: value
                for key, value in request.model_dump(exclude_unset=True).items()
                if key in UPDATABLE_FIELDS and value is not None
            }
            if not fields:
                return existing_flow

            updated_flow = await self.flow_db.update_flow_fields(organization_id, flow_id, fields)
            if updated_flow is None:
                raise FlowNotFoundException(message=f"Flow {flow_id} not found")

            if existing_flow.is_active and not updated_flow.is_active:
                await self._cancel_flow_sessions(flow_id, reason="flow_disabled")

            self.log_util.info(
                service_name="FlowService",
                message=f"Flow '{updated_flow.name}' updated successfully with ID: {flow_id} (fields: {', '.join(fields)})"
            )
            return updated_flow

        except FlowException:
            raise
        except Exception as e:
            self.log_util.error(
                service_name="FlowService",
                message=f"Error updating flow: {str(e)}"
            )
            raise FlowServiceException(message=f"Error updating flow: {str(e)}")

    async def toggle_flow(self, organization_id: str, flow_id: str) -> FlowData:
        """
        Flip is_active. Disabling a flow cancels its running sessions.
        """
        try:
            existing_flow = await self._get_owned_flow(organization_id, flow_id)
            new_state = not existing_flow.is_active

            updated_flow = await self.flow_db.update_flow_fields(organization_id, flow_id, {"is_active": new_state})
            if updated_flow is None:
                raise FlowNotFoundException(message=f"Flow {flow_id} not found")

            cancelled = 0
            if not new_state:
                cancelled = await self._cancel_flow_sessions(flow_id, reason="flow_disabled")

            self.log_util.info(
                service_name="FlowService",
                message=f"Flow '{updated_flow.name}' {'activated' if new_state else 'deactivated'} (ID: {flow_id}, cancelled sessions: {cancelled})"
            )
            return updated_flow

        except FlowException:
            raise
        except Exception as e:
            self.log_util.error(
                service_name="FlowService",
                message=f"Error toggling flow: {str(e)}"
            )
            raise FlowServiceException(message=f"Error toggling flow: {str(e)}")

    async def delete_flow(self, organization_id: str, flow_id: str) -> bool:
        try:
            await self._get_owned_flow(organization_id, flow_id)
            await self._cancel_flow_sessions(flow_id, reason="flow_deleted")

            deleted = await self.flow_db.delete_flow(organization_id, flow_id)
            if not deleted:
                raise FlowNotFoundException(message=f"Flow {flow_id} not found")

            self.log_util.info(service_name="FlowService", message=f"Flow {flow_id} deleted")
            return True

        except FlowException:
            raise
        except Exception as e:
            self.log_util.error(
                service_name="FlowService",
                message=f"Error deleting flow: {str(e)}"
            )
            raise FlowServiceException(message=f"Error deleting flow: {str(e)}")

    async def save_canvas(
        self,
        organization_id: str,
        flow_id: str,
        nodes: List[Dict[str, Any]],
        edges: List[Dict[str, Any]],
        editor_id: Optional[str]
    ) -> FlowData:
        """
        Replace the whole graph of a flow.

        1. Validate the replacement graph
        2. Snapshot the current graph under the current version (a duplicate snapshot is ignored)
        3. Replace nodes/edges, bump version and clear is_draft in one write guarded by the version read in step 2

        Returns the saved flow, whose version is the new version.
        Raises ConcurrencyConflictException if another save landed in between.
        """
        try:
            flow = await self._get_owned_flow(organization_id, flow_id)
            node_dicts, edge_dicts = self.validate_graph(nodes, edges)

            snapshot = FlowVersionData(
                flow_id=flow_id,
                version=flow.version,
                nodes_data=[node.model_dump(mode="json") for node in flow.nodes],
                edges_data=[edge.model_dump(mode="json") for edge in flow.edges],
                created_by=editor_id
            )
            created = await self.flow_db.save_flow_version(snapshot)
            if not created:
                self.log_util.info(
                    service_name="FlowService",
                    message=f"[SAVE_CANVAS] Snapshot for flow {flow_id} version {flow.version} already present"
                )

            saved_flow = await self.flow_db.replace_flow_graph(
                flow_id=flow_id,
                expected_version=flow.version,
                nodes=node_dicts,
                edges=edge_dicts,
                editor_id=editor_id
            )
            if saved_flow is None:
                raise ConcurrencyConflictException(
                    message=f"Flow {flow_id} was saved concurrently (expected version {flow.version})"
                )

            self.log_util.info(
                service_name="FlowService",
                message=f"[SAVE_CANVAS] Flow {flow_id} saved: version {flow.version} -> {saved_flow.version} ({len(node_dicts)} nodes, {len(edge_dicts)} edges)"
            )
            return saved_flow

        except FlowException:
            raise
        except Exception as e:
            self.log_util.error(
                service_name="FlowService",
                message=f"Error saving canvas: {str(e)}"
            )
            raise FlowServiceException(message=f"Error saving canvas: {str(e)}")

    async def get_canvas(self, organization_id: str, flow_id: str) -> Dict[str, Any]:
        flow = await self._get_owned_flow(organization_id, flow_id)
        return {
            "flow_id": flow.id,
            "version": flow.version,
            "nodes": [node.model_dump(mode="json") for node in flow.nodes],
            "edges": [edge.model_dump(mode="json") for edge in flow.edges]
        }

    async def duplicate_flow(self, organization_id: str, flow_id: str, editor_id: Optional[str]) -> FlowData:
        """
        Copy definition and graph into a new inactive draft
        """
        try:
            source = await self._get_owned_flow(organization_id, flow_id)
            copy = FlowData(
                organization_id=organization_id,
                name=f"{source.name} (copy)",
                description=source.description,
                trigger_enabled=False,
                trigger_keywords=list(source.trigger_keywords),
                trigger_match_mode=source.trigger_match_mode,
                connection_ids=list(source.connection_ids),
                is_active=False,
                is_draft=True,
                version=1,
                nodes=[node.model_copy(deep=True) for node in source.nodes],
                edges=[edge.model_copy(deep=True) for edge in source.edges],
                last_edited_by=editor_id
            )
            saved_flow = await self.flow_db.create_flow(copy)

            self.log_util.info(
                service_name="FlowService",
                message=f"Flow {flow_id} duplicated as {saved_flow.id}"
            )
            return saved_flow

        except FlowException:
            raise
        except Exception as e:
            self.log_util.error(
                service_name="FlowService",
                message=f"Error duplicating flow: {str(e)}"
            )
            raise FlowServiceException(message=f"Error duplicating flow: {str(e)}")

    async def get_flow_versions(self, organization_id: str, flow_id: str) -> List[FlowVersionData]:
        await self._get_owned_flow(organization_id, flow_id)
        return await self.flow_db.get_flow_versions(flow_id)

    async def get_flow_version(self, organization_id: str, flow_id: str, version: int) -> FlowVersionData:
        await self._get_owned_flow(organization_id, flow_id)
        snapshot = await self.flow_db.get_flow_version(flow_id, version)
        if snapshot is None:
            raise FlowNotFoundException(message=f"Version {version} of flow {flow_id} not found")
        return snapshot

    async def restore_version(self, organization_id: str, flow_id: str, version: int, editor_id: Optional[str]) -> FlowData:
        """
        Re-apply a snapshot as a new canvas save, so the restore is itself versioned
        """
        snapshot = await self.get_flow_version(organization_id, flow_id, version)
        self.log_util.info(
            service_name="FlowService",
            message=f"[RESTORE] Restoring flow {flow_id} to version {version}"
        )
        return await self.save_canvas(
            organization_id=organization_id,
            flow_id=flow_id,
            nodes=snapshot.nodes_data,
            edges=snapshot.edges_data,
            editor_id=editor_id
        )

    async def get_available_flows(self, organization_id: str, connection_id: str) -> List[FlowData]:
        """
        Published, active flows that can run on a connection (used for manual start)
        """
        flows = await self.flow_db.get_flows_by_organization(organization_id)
        return [
            flow for flow in flows
            if flow.is_active and not flow.is_draft and flow.accepts_connection(connection_id)
        ]
