from fastapi import APIRouter, Request
from fastapi.exceptions import HTTPException
from fastapi.responses import JSONResponse
from typing import Optional

# Utils
from utils.log_utils import LogUtil

# Services
from services.flow_execution_service import FlowExecutionService
from services.execution_log_service import ExecutionLogService

# Models
from models.request.flow_request import StartFlowRequest
from models.response.execution_result import ExecutionResult

# Exceptions
from exceptions.flow_exception import FlowException

# Apis
from apis.flow_api import get_organization_id


def _execution_response(result: ExecutionResult):
    if result.status == "conflict":
        return JSONResponse(status_code=409, content=result.model_dump(mode="json"))
    return result


def create_flow_session_api(
    log_util: LogUtil,
    flow_execution_service: FlowExecutionService,
    execution_log_service: ExecutionLogService
) -> APIRouter:
    router = APIRouter(
        prefix="/session",
        tags=["session"],
    )

    @router.post("/start")
    async def start_flow(request: Request, start_data: StartFlowRequest):
        """
        Manually start a flow on a conversation. An active session on the conversation is replaced.
        """
        try:
            organization_id = get_organization_id(request)
            user_id = request.headers.get("x-user-id")

            result = await flow_execution_service.start_flow(
                organization_id=organization_id,
                flow_id=start_data.flow_id,
                conversation_id=start_data.conversation_id,
                connection_id=start_data.connection_id,
                started_by=user_id,
                variables=start_data.variables,
                contact_name=start_data.contact_name,
                contact_phone=start_data.contact_phone
            )
            return _execution_response(result)
        except FlowException as e:
            log_util.error(service_name="FlowSessionAPI", message=f"Error starting flow: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except HTTPException:
            raise
        except Exception as e:
            log_util.error(service_name="FlowSessionAPI", message=f"Error starting flow: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/cancel/{conversation_id}")
    async def cancel_session(request: Request, conversation_id: str, reason: Optional[str] = None):
        """
        Stop the conversation's flow, e.g. when a human agent takes over.
        """
        try:
            organization_id = get_organization_id(request)

            result = await flow_execution_service.cancel_session(
                organization_id=organization_id,
                conversation_id=conversation_id,
                reason=reason or "cancelled_by_user"
            )
            return _execution_response(result)
        except FlowException as e:
            log_util.error(service_name="FlowSessionAPI", message=f"Error cancelling session: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except HTTPException:
            raise
        except Exception as e:
            log_util.error(service_name="FlowSessionAPI", message=f"Error cancelling session: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/logs/{conversation_id}")
    async def get_execution_logs(request: Request, conversation_id: str, limit: Optional[int] = None):
        try:
            organization_id = get_organization_id(request)

            return await execution_log_service.get_logs(
                organization_id=organization_id,
                conversation_id=conversation_id,
                limit=limit
            )
        except FlowException as e:
            log_util.error(service_name="FlowSessionAPI", message=f"Error getting execution logs: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except HTTPException:
            raise
        except Exception as e:
            log_util.error(service_name="FlowSessionAPI", message=f"Error getting execution logs: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.delete("/logs/{conversation_id}")
    async def clear_execution_logs(request: Request, conversation_id: str):
        try:
            organization_id = get_organization_id(request)

            deleted = await execution_log_service.clear_logs(organization_id=organization_id, conversation_id=conversation_id)
            return {"status": "success", "deleted": deleted}
        except FlowException as e:
            log_util.error(service_name="FlowSessionAPI", message=f"Error clearing execution logs: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except HTTPException:
            raise
        except Exception as e:
            log_util.error(service_name="FlowSessionAPI", message=f"Error clearing execution logs: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/{conversation_id}")
    async def get_active_session(request: Request, conversation_id: str):
        try:
            organization_id = get_organization_id(request)

            return await flow_execution_service.get_active_session(
                organization_id=organization_id,
                conversation_id=conversation_id
            )
        except FlowException as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except HTTPException:
            raise
        except Exception as e:
            log_util.error(service_name="FlowSessionAPI", message=f"Error getting active session: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    return router
