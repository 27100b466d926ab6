from fastapi import APIRouter, Request
from fastapi.exceptions import HTTPException

# Utils
from utils.log_utils import LogUtil

# Services
from services.flow_service import FlowService

# Models
from models.flow_data import FlowSummary
from models.request.flow_request import FlowCreateRequest, FlowUpdateRequest, CanvasRequest

# Exceptions
from exceptions.flow_exception import FlowException


def get_organization_id(request: Request) -> str:
    organization_id = request.headers.get("x-organization-id")
    if not organization_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return organization_id


def create_flow_api(
    log_util: LogUtil,
    flow_service: FlowService
) -> APIRouter:
    router = APIRouter(
        prefix="/flow",
        tags=["flow"],
    )

    @router.post("/create")
    async def create_flow(request: Request, flow_data: FlowCreateRequest):
        try:
            organization_id = get_organization_id(request)
            user_id = request.headers.get("x-user-id")

            return await flow_service.create_flow(organization_id=organization_id, user_id=user_id, request=flow_data)
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error creating flow: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except HTTPException:
            raise
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error creating flow: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/list")
    async def get_flows_list(request: Request):
        try:
            organization_id = get_organization_id(request)

            flows = await flow_service.get_flows_list(organization_id=organization_id)
            return [FlowSummary.from_flow(flow) for flow in flows]
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error getting flows list: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except HTTPException:
            raise
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error getting flows list: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/detail/{flow_id}")
    async def get_flow_detail(request: Request, flow_id: str):
        try:
            organization_id = get_organization_id(request)

            return await flow_service.get_flow_detail(organization_id=organization_id, flow_id=flow_id)
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error getting flow detail: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except HTTPException:
            raise
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error getting flow detail: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.put("/update/{flow_id}")
    async def update_flow(request: Request, flow_id: str, flow_data: FlowUpdateRequest):
        try:
            organization_id = get_organization_id(request)

            return await flow_service.update_flow(organization_id=organization_id, flow_id=flow_id, request=flow_data)
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error updating flow: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except HTTPException:
            raise
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error updating flow: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.delete("/delete/{flow_id}")
    async def delete_flow(request: Request, flow_id: str):
        try:
            organization_id = get_organization_id(request)

            await flow_service.delete_flow(organization_id=organization_id, flow_id=flow_id)
            return {"status": "success", "flow_id": flow_id}
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error deleting flow: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except HTTPException:
            raise
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error deleting flow: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/toggle/{flow_id}")
    async def toggle_flow(request: Request, flow_id: str):
        """
        Activate or deactivate a flow. Deactivating cancels its running sessions.
        """
        try:
            organization_id = get_organization_id(request)

            return await flow_service.toggle_flow(organization_id=organization_id, flow_id=flow_id)
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error toggling flow: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except HTTPException:
            raise
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error toggling flow: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/canvas/{flow_id}")
    async def get_canvas(request: Request, flow_id: str):
        try:
            organization_id = get_organization_id(request)

            return await flow_service.get_canvas(organization_id=organization_id, flow_id=flow_id)
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error getting canvas: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except HTTPException:
            raise
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error getting canvas: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.put("/canvas/{flow_id}")
    async def save_canvas(request: Request, flow_id: str, canvas: CanvasRequest):
        """
        Replace all nodes and edges of a flow.

        Request body:
        {
            "nodes": [{"node_id": "start", "node_type": "start", ...}, ...],
            "edges": [{"edge_id": "e1", "source_node_id": "start", "target_node_id": "...", ...}, ...]
        }
        The editor's shape (id/type/data, source/target/sourceHandle) is accepted too.
        """
        try:
            organization_id = get_organization_id(request)
            user_id = request.headers.get("x-user-id")

            saved_flow = await flow_service.save_canvas(
                organization_id=organization_id,
                flow_id=flow_id,
                nodes=canvas.nodes,
                edges=canvas.edges,
                editor_id=user_id
            )
            return {"status": "success", "flow_id": flow_id, "version": saved_flow.version}
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error saving canvas: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except HTTPException:
            raise
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error saving canvas: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/duplicate/{flow_id}")
    async def duplicate_flow(request: Request, flow_id: str):
        try:
            organization_id = get_organization_id(request)
            user_id = request.headers.get("x-user-id")

            return await flow_service.duplicate_flow(organization_id=organization_id, flow_id=flow_id, editor_id=user_id)
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error duplicating flow: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except HTTPException:
            raise
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error duplicating flow: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/versions/{flow_id}")
    async def get_flow_versions(request: Request, flow_id: str):
        try:
            organization_id = get_organization_id(request)

            return await flow_service.get_flow_versions(organization_id=organization_id, flow_id=flow_id)
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error getting flow versions: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except HTTPException:
            raise
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error getting flow versions: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/versions/{flow_id}/{version}")
    async def get_flow_version(request: Request, flow_id: str, version: int):
        try:
            organization_id = get_organization_id(request)

            return await flow_service.get_flow_version(organization_id=organization_id, flow_id=flow_id, version=version)
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error getting flow version: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except HTTPException:
            raise
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error getting flow version: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/versions/{flow_id}/{version}/restore")
    async def restore_flow_version(request: Request, flow_id: str, version: int):
        try:
            organization_id = get_organization_id(request)
            user_id = request.headers.get("x-user-id")

            saved_flow = await flow_service.restore_version(
                organization_id=organization_id,
                flow_id=flow_id,
                version=version,
                editor_id=user_id
            )
            return {"status": "success", "flow_id": flow_id, "restored_version": version, "version": saved_flow.version}
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error restoring flow version: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except HTTPException:
            raise
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error restoring flow version: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/available/{connection_id}")
    async def get_available_flows(request: Request, connection_id: str):
        try:
            organization_id = get_organization_id(request)

            flows = await flow_service.get_available_flows(organization_id=organization_id, connection_id=connection_id)
            return [FlowSummary.from_flow(flow) for flow in flows]
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error getting available flows: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except HTTPException:
            raise
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error getting available flows: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    return router
