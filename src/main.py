import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Optional

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Database
from database.flow_db_base import BaseFlowDB
from database.flow_db_factory import create_flow_db

# Internal Services (external collaborators)
from services.internal.channel_service import ChannelService
from services.internal.ai_service import AIService
from services.internal.http_request_service import HttpRequestService
from services.internal.crm_service import CRMService
from services.internal.email_service import EmailService

# Services
from services.flow_service import FlowService
from services.trigger_identification_service import TriggerIdentificationService
from services.reply_validation_service import ReplyValidationService
from services.node_evaluation_service import NodeEvaluationService
from services.effect_dispatch_service import EffectDispatchService
from services.execution_log_service import ExecutionLogService
from services.delay_scheduler_service import DelaySchedulerService
from services.flow_execution_service import FlowExecutionService
from services.webhook_service import WebhookService

# APIs
from apis.flow_api import create_flow_api
from apis.flow_session_api import create_flow_session_api
from apis.webhook_message_api import create_webhook_message_api


def create_app(
    log_util: LogUtil,
    environment_utils: EnvironmentUtils,
    flow_db: Optional[BaseFlowDB] = None,
    channel_service: Optional[ChannelService] = None,
    ai_service: Optional[AIService] = None,
    http_request_service: Optional[HttpRequestService] = None,
    crm_service: Optional[CRMService] = None,
    email_service: Optional[EmailService] = None
) -> FastAPI:
    """
    Wire services and routers. Collaborators may be injected (tests), otherwise they
    are built from configuration.
    """
    # Database
    flow_db = flow_db or create_flow_db(log_util=log_util, environment_utils=environment_utils)

    # Internal Services
    channel_service = channel_service or ChannelService(log_util=log_util, environment_utils=environment_utils)
    ai_service = ai_service or AIService(log_util=log_util, environment_utils=environment_utils)
    http_request_service = http_request_service or HttpRequestService(log_util=log_util)
    crm_service = crm_service or CRMService(log_util=log_util, environment_utils=environment_utils)
    email_service = email_service or EmailService(log_util=log_util, environment_utils=environment_utils)

    # Services
    reply_validation_service = ReplyValidationService(log_util=log_util)

    node_evaluation_service = NodeEvaluationService(
        log_util=log_util,
        reply_validation_service=reply_validation_service,
        ai_service=ai_service,
        http_request_service=http_request_service,
        channel_service=channel_service
    )

    effect_dispatch_service = EffectDispatchService(
        log_util=log_util,
        channel_service=channel_service,
        crm_service=crm_service,
        email_service=email_service
    )

    execution_log_service = ExecutionLogService(
        log_util=log_util,
        flow_db=flow_db,
        default_limit=int(environment_utils.get_env_variable("EXECUTION_LOG_LIMIT"))
    )

    trigger_identification_service = TriggerIdentificationService(
        log_util=log_util,
        flow_db=flow_db
    )

    delay_scheduler_service = DelaySchedulerService(
        log_util=log_util,
        flow_db=flow_db,
        check_interval_seconds=int(environment_utils.get_env_variable("DELAY_CHECK_INTERVAL_SECONDS"))
    )

    flow_execution_service = FlowExecutionService(
        log_util=log_util,
        flow_db=flow_db,
        trigger_identification_service=trigger_identification_service,
        node_evaluation_service=node_evaluation_service,
        effect_dispatch_service=effect_dispatch_service,
        execution_log_service=execution_log_service,
        delay_scheduler_service=delay_scheduler_service,
        max_steps=int(environment_utils.get_env_variable("MAX_FLOW_STEPS"))
    )

    # Set execution service in delay scheduler
    delay_scheduler_service.flow_execution_service = flow_execution_service

    flow_service = FlowService(
        log_util=log_util,
        flow_db=flow_db,
        flow_execution_service=flow_execution_service
    )

    webhook_service = WebhookService(
        log_util=log_util,
        flow_execution_service=flow_execution_service
    )

    # Define lifespan function
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        await flow_db.ensure_indexes()
        await delay_scheduler_service.start()
        log_util.info(service_name="FlowAutomationEngine", message="Application startup complete")

        yield

        # Shutdown
        await delay_scheduler_service.stop()
        flow_db.close()
        log_util.info(service_name="FlowAutomationEngine", message="Application shutdown complete")

    # Create FastAPI app
    app = FastAPI(
        title="flow automation engine",
        description="Chatbot flow automation engine for multi-tenant WhatsApp CRM conversations",
        version="1.0.0",
        lifespan=lifespan
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Flow management APIs
    app.include_router(create_flow_api(log_util=log_util, flow_service=flow_service))

    # Session control and execution logs
    app.include_router(create_flow_session_api(
        log_util=log_util,
        flow_execution_service=flow_execution_service,
        execution_log_service=execution_log_service
    ))

    # Inbound messages from the messaging service
    app.include_router(create_webhook_message_api(log_util=log_util, webhook_service=webhook_service))

    # Exposed for scripts and tests
    app.state.flow_db = flow_db
    app.state.flow_execution_service = flow_execution_service
    app.state.delay_scheduler_service = delay_scheduler_service

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "flow_automation_engine"}

    # Global exception handler for HTTPExceptions
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        log_util.error(service_name="FlowAutomationEngine", message=f"HTTPException: {exc.detail}")
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "detail": exc.detail,
                "error": str(exc),
                "status_code": exc.status_code
            },
            headers={"Content-Type": "application/json"}
        )

    # Global exception handler for any unhandled exceptions
    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        log_util.error(service_name="FlowAutomationEngine", message=f"Exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error",
                "error": str(exc),
                "status_code": 500
            },
            headers={"Content-Type": "application/json"}
        )

    return app


# Utils
log_util = LogUtil()
environment_utils = EnvironmentUtils(log_util=log_util)

app = create_app(log_util=log_util, environment_utils=environment_utils)

if __name__ == "__main__":
    uvicorn.run(
        app,
        host=environment_utils.get_env_variable("HOST"),
        port=environment_utils.get_env_variable("PORT")
    )
