from dotenv import load_dotenv
from typing import Optional, Dict, Any
import os

# Utils
from utils.log_utils import LogUtil

"""
Utility class for environment variables
"""
class EnvironmentUtils:
    def __init__(self, log_util: LogUtil, overrides: Optional[Dict[str, Any]] = None):

        # Load environment variables
        load_dotenv()

        # Initialize logger
        self.log_util = log_util

        # Environment variables
        self.env_variables = {
            "APP_ENV": os.getenv("APP_ENV", "production"),
            "HOST": os.getenv("HOST", "0.0.0.0"),
            "PORT": int(os.getenv("PORT", "8018")),
            "ORG_ID": os.getenv("ORG_ID", "flow-engine"),
            "LOKI_URL": os.getenv("LOKI_URL", ""),
            "LOG_LEVEL": os.getenv("LOG_LEVEL", "INFO"),

            # Persistence
            "FLOW_DB_BACKEND": os.getenv("FLOW_DB_BACKEND", "mongo"),
            "MONGO_URI": os.getenv("MONGO_URI", ""),
            "MONGO_USERNAME": os.getenv("MONGO_USERNAME", ""),
            "MONGO_PASSWORD": os.getenv("MONGO_PASSWORD", ""),
            "MONGO_AUTH_SOURCE": os.getenv("MONGO_AUTH_SOURCE", "admin"),
            "MONGO_HOST": os.getenv("MONGO_HOST", "localhost"),
            "MONGO_PORT": int(os.getenv("MONGO_PORT", "27017")),
            "MONGO_DB_NAME": os.getenv("MONGO_DB_NAME", "flow_db"),

            # Collaborator services
            "CHANNEL_SERVICE_URL": os.getenv("CHANNEL_SERVICE_URL", "http://localhost:8010/channel"),
            "CRM_SERVICE_URL": os.getenv("CRM_SERVICE_URL", "http://localhost:8011/crm"),
            "EMAIL_SERVICE_URL": os.getenv("EMAIL_SERVICE_URL", "http://localhost:8012/email"),
            "COLLABORATOR_TIMEOUT_SECONDS": float(os.getenv("COLLABORATOR_TIMEOUT_SECONDS", "15")),

            # AI provider
            "AI_API_URL": os.getenv("AI_API_URL", "https://api.openai.com/v1/chat/completions"),
            "AI_API_KEY": os.getenv("AI_API_KEY", ""),
            "AI_DEFAULT_MODEL": os.getenv("AI_DEFAULT_MODEL", "gpt-4o-mini"),
            "AI_TIMEOUT_SECONDS": float(os.getenv("AI_TIMEOUT_SECONDS", "30")),

            # Engine
            "MAX_FLOW_STEPS": int(os.getenv("MAX_FLOW_STEPS", "50")),
            "DELAY_CHECK_INTERVAL_SECONDS": int(os.getenv("DELAY_CHECK_INTERVAL_SECONDS", "5")),
            "EXECUTION_LOG_LIMIT": int(os.getenv("EXECUTION_LOG_LIMIT", "200")),
        }

        if overrides:
            self.env_variables.update(overrides)

    def get_env_variable(self, variable_name: str) -> str | int | float:
        if variable_name not in self.env_variables:
            self.log_util.error(service_name="EnvironmentUtils", message=f"Environment variable {variable_name} not found")
            raise ValueError(f"Environment variable {variable_name} not found")
        return self.env_variables[variable_name]
