# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Database
from database.flow_db_base import BaseFlowDB
from database.flow_db import FlowDB
from database.memory_flow_db import MemoryFlowDB


def create_flow_db(log_util: LogUtil, environment_utils: EnvironmentUtils) -> BaseFlowDB:
    """
    Build the persistence backend selected by FLOW_DB_BACKEND (mongo | memory)
    """
    backend = str(environment_utils.get_env_variable("FLOW_DB_BACKEND")).lower()
    if backend == "memory":
        log_util.info(service_name="FlowDBFactory", message="Using in-memory flow store")
        return MemoryFlowDB(log_util=log_util)
    if backend == "mongo":
        log_util.info(service_name="FlowDBFactory", message="Using MongoDB flow store")
        return FlowDB(log_util=log_util, environment_utils=environment_utils)
    raise ValueError(f"Unknown FLOW_DB_BACKEND '{backend}', expected 'mongo' or 'memory'")
