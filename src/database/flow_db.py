from motor.motor_asyncio import AsyncIOMotorClient
from bson import ObjectId
from bson.errors import InvalidId
import urllib.parse
import threading
import asyncio
from typing import Optional, List, Dict, Any
from datetime import datetime
import weakref
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import NetworkTimeout, ServerSelectionTimeoutError, ConnectionFailure, DuplicateKeyError

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Database
from database.flow_db_base import BaseFlowDB

# Exceptions
from exceptions.flow_exception import FlowDBException, ConcurrencyConflictException, FlowException

# Models
from models.flow_data import FlowData
from models.flow_version_data import FlowVersionData
from models.flow_session_data import FlowSessionData
from models.delay_data import DelayData
from models.execution_log_data import ExecutionLogData

"""
Database class for flow operations
"""
class FlowDB(BaseFlowDB):
    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils):

        # Initialize logger
        self.log_util = log_util

        # Initialize environment utils
        self.environment_utils = environment_utils

        # Mongo credentials
        self.mongo_uri = self.environment_utils.get_env_variable("MONGO_URI")
        self.username = urllib.parse.quote_plus(str(self.environment_utils.get_env_variable("MONGO_USERNAME")))
        self.password = urllib.parse.quote_plus(str(self.environment_utils.get_env_variable("MONGO_PASSWORD")))
        self.auth_source = self.environment_utils.get_env_variable("MONGO_AUTH_SOURCE")
        self.host = self.environment_utils.get_env_variable("MONGO_HOST")
        self.port = int(self.environment_utils.get_env_variable("MONGO_PORT"))
        self.db_name = self.environment_utils.get_env_variable("MONGO_DB_NAME")

        # Mongo Connection Pool Configs
        self.max_pool_size = 50
        self.min_pool_size = 0  # Create connections on-demand instead of at startup
        self.max_idle_time_ms = 30000
        self.wait_queue_timeout_ms = 10000
        self.connect_timeout_ms = 10000
        self.server_selection_timeout_ms = 10000
        self.socket_timeout_ms = 10000

        # MongoDB client - will be initialized lazily on first use
        # Use a dictionary keyed by event loop ID to support multiple event loops
        self._clients = {}  # {loop_id: (client, db, collections_dict)}

        # Thread-safe initialization lock
        self._client_lock = threading.Lock()

    def _build_connection_uri(self) -> str:
        if self.mongo_uri:
            return self.mongo_uri
        if self.username and self.password:
            return f"mongodb://{self.username}:{self.password}@{self.host}:{self.port}/?authSource={self.auth_source}"
        return f"mongodb://{self.host}:{self.port}/"

    def _get_client_for_current_loop(self):
        """
        Thread-safe method to get the MongoDB client and collections for the current event loop.
        Returns a dictionary with 'client', 'db', and 'collections' for the current event loop.
        This ensures each thread/event loop gets its own client instance without overwriting others.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            raise RuntimeError("No event loop available. Database methods must be called from an async context.")

        loop_id = id(loop)

        # Check if we already have a client for this event loop
        if loop_id in self._clients:
            return self._clients[loop_id]

        # Need to create a new client for this event loop
        with self._client_lock:
            # Double-check after acquiring lock (another thread might have created it)
            if loop_id in self._clients:
                return self._clients[loop_id]

            client = AsyncIOMotorClient(
                self._build_connection_uri(),
                maxPoolSize=self.max_pool_size,
                minPoolSize=self.min_pool_size,
                maxIdleTimeMS=self.max_idle_time_ms,
                waitQueueTimeoutMS=self.wait_queue_timeout_ms,
                connectTimeoutMS=self.connect_timeout_ms,
                serverSelectionTimeoutMS=self.server_selection_timeout_ms,
                socketTimeoutMS=self.socket_timeout_ms,
                retryWrites=True,
                retryReads=True
            )
            db = client[self.db_name]

            collections = self._initialize_collections_for_client(db)

            client_data = {
                'client': client,
                'db': db,
                'collections': collections,
                'loop': weakref.ref(loop)  # Weak reference to avoid circular references
            }
            self._clients[loop_id] = client_data

            self.log_util.info(
                service_name="FlowDB",
                message=f"MongoDB client initialized for event loop {loop_id} (lazy initialization)"
            )

            return client_data

    def _initialize_collections_for_client(self, db):
        """
        Initialize MongoDB collections for a given database instance
        Returns a dictionary of collections
        """
        return {
            'flows': db.flows,
            'flow_versions': db.flow_versions,
            'flow_sessions': db.flow_sessions,
            'delays': db.delays,
            'flow_execution_logs': db.flow_execution_logs
        }

    def close(self):
        """
        Close all MongoDB clients and cleanup resources
        """
        with self._client_lock:
            for loop_id, client_data in self._clients.items():
                try:
                    client_data['client'].close()
                except Exception as e:
                    self.log_util.warning(
                        service_name="FlowDB",
                        message=f"Error closing client for loop {loop_id}: {str(e)}"
                    )

            self._clients.clear()

            self.log_util.info(
                service_name="FlowDB",
                message="All MongoDB clients closed"
            )

    def _handle_db_operation(self, operation_name: str, error: Exception) -> None:
        """
        Handle database operation errors with appropriate logging and exception wrapping.

        Args:
            operation_name: Name of the operation that failed
            error: The exception that occurred
        """
        if isinstance(error, FlowException):
            raise error
        if isinstance(error, (NetworkTimeout, ServerSelectionTimeoutError, ConnectionFailure)):
            self.log_util.error(
                service_name="FlowDB",
                message=f"Database connection error in {operation_name}: {str(error)}"
            )
            raise FlowDBException(
                message=f"Database connection error: {str(error)}",
                status_code=503  # Service Unavailable
            )
        self.log_util.error(
            service_name="FlowDB",
            message=f"Error in {operation_name}: {str(error)}"
        )
        raise FlowDBException(
            message=f"Database error: {str(error)}",
            status_code=500
        )

    @staticmethod
    def _object_id(value: str) -> Optional[ObjectId]:
        try:
            return ObjectId(value)
        except (InvalidId, TypeError):
            return None

    @staticmethod
    def _from_document(document: Dict[str, Any]) -> Dict[str, Any]:
        document["id"] = str(document.pop("_id"))
        return document

    @staticmethod
    def _flow_to_document(flow: FlowData) -> Dict[str, Any]:
        flow_dict = flow.model_dump(exclude={"id", "nodes", "edges"})
        flow_dict["nodes"] = [node.model_dump(mode="json") for node in flow.nodes]
        flow_dict["edges"] = [edge.model_dump(mode="json") for edge in flow.edges]
        return flow_dict

    @staticmethod
    def _session_to_document(session: FlowSessionData) -> Dict[str, Any]:
        session_dict = session.model_dump(exclude={"id"})
        session_dict["status"] = session.status.value
        return session_dict

    # Flow CRUD operations
    async def create_flow(self, flow: FlowData) -> FlowData:
        """
        Create a new flow
        """
        client_data = self._get_client_for_current_loop()
        try:
            flow_dict = self._flow_to_document(flow)
            result = await client_data['collections']['flows'].insert_one(flow_dict)
            flow_dict["_id"] = result.inserted_id
            return FlowData.model_validate(self._from_document(flow_dict))
        except Exception as e:
            self._handle_db_operation("create_flow", e)

    async def get_flow(self, flow_id: str) -> Optional[FlowData]:
        """
        Get a flow by ID
        """
        object_id = self._object_id(flow_id)
        if object_id is None:
            return None
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['flows'].find_one({"_id": object_id})
            if result is None:
                return None
            return FlowData.model_validate(self._from_document(result))
        except Exception as e:
            self._handle_db_operation("get_flow", e)

    async def get_flow_for_organization(self, organization_id: str, flow_id: str) -> Optional[FlowData]:
        """
        Get a flow by ID scoped to its organization
        """
        object_id = self._object_id(flow_id)
        if object_id is None:
            return None
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['flows'].find_one(
                {"_id": object_id, "organization_id": organization_id}
            )
            if result is None:
                return None
            return FlowData.model_validate(self._from_document(result))
        except Exception as e:
            self._handle_db_operation("get_flow_for_organization", e)

    async def get_flows_by_organization(self, organization_id: str) -> List[FlowData]:
        """
        Get all flows for an organization
        """
        client_data = self._get_client_for_current_loop()
        try:
            cursor = client_data['collections']['flows'].find(
                {"organization_id": organization_id}
            ).sort([("updated_at", DESCENDING), ("_id", ASCENDING)])
            flows = []
            async for flow_dict in cursor:
                flows.append(FlowData.model_validate(self._from_document(flow_dict)))
            return flows
        except Exception as e:
            self._handle_db_operation("get_flows_by_organization", e)

    async def update_flow_fields(self, organization_id: str, flow_id: str, fields: Dict[str, Any]) -> Optional[FlowData]:
        """
        Update flow settings fields (never the graph, see replace_flow_graph)
        """
        object_id = self._object_id(flow_id)
        if object_id is None:
            return None
        client_data = self._get_client_for_current_loop()
        try:
            update_fields = dict(fields)
            update_fields["updated_at"] = datetime.utcnow()
            result = await client_data['collections']['flows'].find_one_and_update(
                {"_id": object_id, "organization_id": organization_id},
                {"$set": update_fields},
                return_document=ReturnDocument.AFTER
            )
            if result is None:
                return None
            return FlowData.model_validate(self._from_document(result))
        except Exception as e:
            self._handle_db_operation("update_flow_fields", e)

    async def delete_flow(self, organization_id: str, flow_id: str) -> bool:
        """
        Delete a flow and its version history
        """
        object_id = self._object_id(flow_id)
        if object_id is None:
            return False
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['flows'].delete_one(
                {"_id": object_id, "organization_id": organization_id}
            )
            if result.deleted_count == 0:
                return False
            await client_data['collections']['flow_versions'].delete_many({"flow_id": flow_id})
            return True
        except Exception as e:
            self._handle_db_operation("delete_flow", e)

    async def replace_flow_graph(
        self,
        flow_id: str,
        expected_version: int,
        nodes: List[Dict[str, Any]],
        edges: List[Dict[str, Any]],
        editor_id: Optional[str]
    ) -> Optional[FlowData]:
        """
        Replace the whole graph in a single document write guarded by the current version
        """
        object_id = self._object_id(flow_id)
        if object_id is None:
            return None
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['flows'].find_one_and_update(
                {"_id": object_id, "version": expected_version},
                {
                    "$set": {
                        "nodes": nodes,
                        "edges": edges,
                        "version": expected_version + 1,
                        "is_draft": False,
                        "last_edited_by": editor_id,
                        "updated_at": datetime.utcnow()
                    }
                },
                return_document=ReturnDocument.AFTER
            )
            if result is None:
                return None
            return FlowData.model_validate(self._from_document(result))
        except Exception as e:
            self._handle_db_operation("replace_flow_graph", e)

    async def get_trigger_candidates(self, organization_id: str) -> List[FlowData]:
        """
        Get flows that may start on an inbound message
        """
        client_data = self._get_client_for_current_loop()
        try:
            cursor = client_data['collections']['flows'].find(
                {
                    "organization_id": organization_id,
                    "is_active": True,
                    "is_draft": False,
                    "trigger_enabled": True
                }
            ).sort([("updated_at", DESCENDING), ("_id", ASCENDING)])
            flows = []
            async for flow_dict in cursor:
                flows.append(FlowData.model_validate(self._from_document(flow_dict)))
            return flows
        except Exception as e:
            self._handle_db_operation("get_trigger_candidates", e)

    # Flow version operations
    async def save_flow_version(self, version: FlowVersionData) -> bool:
        """
        Save a graph snapshot. A snapshot for the same (flow_id, version) is ignored.
        """
        client_data = self._get_client_for_current_loop()
        try:
            await client_data['collections']['flow_versions'].insert_one(version.model_dump(exclude={"id"}))
            return True
        except DuplicateKeyError:
            self.log_util.info(
                service_name="FlowDB",
                message=f"Snapshot for flow {version.flow_id} version {version.version} already exists, skipping"
            )
            return False
        except Exception as e:
            self._handle_db_operation("save_flow_version", e)

    async def get_flow_versions(self, flow_id: str) -> List[FlowVersionData]:
        client_data = self._get_client_for_current_loop()
        try:
            cursor = client_data['collections']['flow_versions'].find({"flow_id": flow_id}).sort("version", DESCENDING)
            versions = []
            async for version_dict in cursor:
                versions.append(FlowVersionData.model_validate(self._from_document(version_dict)))
            return versions
        except Exception as e:
            self._handle_db_operation("get_flow_versions", e)

    async def get_flow_version(self, flow_id: str, version: int) -> Optional[FlowVersionData]:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['flow_versions'].find_one({"flow_id": flow_id, "version": version})
            if result is None:
                return None
            return FlowVersionData.model_validate(self._from_document(result))
        except Exception as e:
            self._handle_db_operation("get_flow_version", e)

    # Flow session operations
    async def create_session(self, session: FlowSessionData) -> FlowSessionData:
        """
        Insert a new active session. The unique partial index on conversation_id
        rejects a second active session for the same conversation.
        """
        client_data = self._get_client_for_current_loop()
        try:
            session_dict = self._session_to_document(session)
            result = await client_data['collections']['flow_sessions'].insert_one(session_dict)
            session_dict["_id"] = result.inserted_id
            return FlowSessionData.model_validate(self._from_document(session_dict))
        except DuplicateKeyError:
            raise ConcurrencyConflictException(
                message=f"Conversation {session.conversation_id} already has an active flow session"
            )
        except Exception as e:
            self._handle_db_operation("create_session", e)

    async def get_session(self, session_id: str) -> Optional[FlowSessionData]:
        object_id = self._object_id(session_id)
        if object_id is None:
            return None
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['flow_sessions'].find_one({"_id": object_id})
            if result is None:
                return None
            return FlowSessionData.model_validate(self._from_document(result))
        except Exception as e:
            self._handle_db_operation("get_session", e)

    async def get_active_session(self, conversation_id: str) -> Optional[FlowSessionData]:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['flow_sessions'].find_one(
                {"conversation_id": conversation_id, "is_active": True}
            )
            if result is None:
                return None
            return FlowSessionData.model_validate(self._from_document(result))
        except Exception as e:
            self._handle_db_operation("get_active_session", e)

    async def update_session(self, session: FlowSessionData, expected_revision: int) -> FlowSessionData:
        """
        Compare-and-set on revision
        """
        object_id = self._object_id(session.id)
        if object_id is None:
            raise ConcurrencyConflictException(message=f"Session {session.id} does not exist")
        client_data = self._get_client_for_current_loop()
        try:
            session_dict = self._session_to_document(session)
            session_dict["revision"] = expected_revision + 1
            session_dict["updated_at"] = datetime.utcnow()
            result = await client_data['collections']['flow_sessions'].find_one_and_update(
                {"_id": object_id, "revision": expected_revision},
                {"$set": session_dict},
                return_document=ReturnDocument.AFTER
            )
            if result is None:
                raise ConcurrencyConflictException(
                    message=f"Session {session.id} was modified concurrently (expected revision {expected_revision})"
                )
            return FlowSessionData.model_validate(self._from_document(result))
        except DuplicateKeyError:
            raise ConcurrencyConflictException(
                message=f"Conversation {session.conversation_id} already has an active flow session"
            )
        except Exception as e:
            self._handle_db_operation("update_session", e)

    async def get_active_sessions_by_flow(self, flow_id: str) -> List[FlowSessionData]:
        client_data = self._get_client_for_current_loop()
        try:
            cursor = client_data['collections']['flow_sessions'].find({"flow_id": flow_id, "is_active": True})
            sessions = []
            async for session_dict in cursor:
                sessions.append(FlowSessionData.model_validate(self._from_document(session_dict)))
            return sessions
        except Exception as e:
            self._handle_db_operation("get_active_sessions_by_flow", e)

    # Delay operations
    async def save_delay(self, delay: DelayData) -> DelayData:
        client_data = self._get_client_for_current_loop()
        try:
            delay_dict = delay.model_dump(exclude={"id"})
            result = await client_data['collections']['delays'].insert_one(delay_dict)
            delay_dict["_id"] = result.inserted_id
            return DelayData.model_validate(self._from_document(delay_dict))
        except Exception as e:
            self._handle_db_operation("save_delay", e)

    async def get_pending_delays(self, now: datetime) -> List[DelayData]:
        """
        Get delays that are due and not processed yet
        """
        client_data = self._get_client_for_current_loop()
        try:
            cursor = client_data['collections']['delays'].find(
                {"processed": False, "resume_at": {"$lte": now}}
            ).sort("resume_at", ASCENDING)
            delays = []
            async for delay_dict in cursor:
                delays.append(DelayData.model_validate(self._from_document(delay_dict)))
            return delays
        except Exception as e:
            self._handle_db_operation("get_pending_delays", e)

    async def mark_delay_as_processed(self, delay_id: str) -> bool:
        object_id = self._object_id(delay_id)
        if object_id is None:
            return False
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['delays'].update_one(
                {"_id": object_id},
                {"$set": {"processed": True, "processed_at": datetime.utcnow()}}
            )
            return result.modified_count > 0
        except Exception as e:
            self._handle_db_operation("mark_delay_as_processed", e)

    async def mark_session_delays_processed(self, session_id: str) -> int:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['delays'].update_many(
                {"session_id": session_id, "processed": False},
                {"$set": {"processed": True, "processed_at": datetime.utcnow()}}
            )
            return result.modified_count
        except Exception as e:
            self._handle_db_operation("mark_session_delays_processed", e)

    # Execution log operations
    async def save_execution_logs(self, logs: List[ExecutionLogData]) -> None:
        if not logs:
            return
        client_data = self._get_client_for_current_loop()
        try:
            await client_data['collections']['flow_execution_logs'].insert_many(
                [log.model_dump(exclude={"id"}) for log in logs]
            )
        except Exception as e:
            self._handle_db_operation("save_execution_logs", e)

    async def get_execution_logs(
        self,
        organization_id: str,
        conversation_id: Optional[str] = None,
        limit: int = 100
    ) -> List[ExecutionLogData]:
        client_data = self._get_client_for_current_loop()
        try:
            query: Dict[str, Any] = {"organization_id": organization_id}
            if conversation_id:
                query["conversation_id"] = conversation_id
            cursor = client_data['collections']['flow_execution_logs'].find(query).sort(
                [("created_at", DESCENDING), ("_id", DESCENDING)]
            ).limit(limit)
            logs = []
            async for log_dict in cursor:
                logs.append(ExecutionLogData.model_validate(self._from_document(log_dict)))
            return logs
        except Exception as e:
            self._handle_db_operation("get_execution_logs", e)

    async def delete_execution_logs(self, organization_id: str, conversation_id: Optional[str] = None) -> int:
        client_data = self._get_client_for_current_loop()
        try:
            query: Dict[str, Any] = {"organization_id": organization_id}
            if conversation_id:
                query["conversation_id"] = conversation_id
            result = await client_data['collections']['flow_execution_logs'].delete_many(query)
            return result.deleted_count
        except Exception as e:
            self._handle_db_operation("delete_execution_logs", e)

    async def ensure_indexes(self) -> None:
        """
        Create the indexes the engine relies on for correctness and lookups
        """
        client_data = self._get_client_for_current_loop()
        collections = client_data['collections']
        try:
            await collections['flows'].create_index([("organization_id", ASCENDING), ("updated_at", DESCENDING)])
            await collections['flow_versions'].create_index(
                [("flow_id", ASCENDING), ("version", ASCENDING)], unique=True
            )
            await collections['flow_sessions'].create_index(
                [("conversation_id", ASCENDING)],
                unique=True,
                partialFilterExpression={"is_active": True},
                name="one_active_session_per_conversation"
            )
            await collections['flow_sessions'].create_index([("flow_id", ASCENDING), ("is_active", ASCENDING)])
            await collections['delays'].create_index([("processed", ASCENDING), ("resume_at", ASCENDING)])
            await collections['delays'].create_index([("session_id", ASCENDING)])
            await collections['flow_execution_logs'].create_index(
                [("organization_id", ASCENDING), ("conversation_id", ASCENDING), ("created_at", DESCENDING)]
            )
            self.log_util.info(service_name="FlowDB", message="MongoDB indexes ensured")
        except Exception as e:
            self._handle_db_operation("ensure_indexes", e)
