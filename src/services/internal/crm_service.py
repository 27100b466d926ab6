from typing import Optional, Dict, Any
import httpx

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Exceptions
from exceptions.flow_exception import ExternalCallException


class CRMService:
    """Service for CRM side effects: tags, tasks and internal notifications."""
    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils):
        self.log_util = log_util
        self.crm_service_url = str(environment_utils.get_env_variable("CRM_SERVICE_URL")).rstrip("/")
        self.timeout = float(environment_utils.get_env_variable("COLLABORATOR_TIMEOUT_SECONDS"))

    async def _post(self, path: str, payload: Dict[str, Any]) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(f"{self.crm_service_url}{path}", json=payload)
        except httpx.TimeoutException:
            raise ExternalCallException(message=f"Timeout calling CRM service {path}", is_timeout=True, status_code=504)
        except httpx.HTTPError as e:
            raise ExternalCallException(message=f"Error calling CRM service {path}: {str(e)}")
        if response.status_code >= 300:
            raise ExternalCallException(message=f"CRM service {path} returned {response.status_code}")

    async def add_tag(self, organization_id: str, conversation_id: str, tag_id: str) -> None:
        await self._post("/tag/add", {
            "organization_id": organization_id,
            "conversation_id": conversation_id,
            "tag_id": tag_id
        })

    async def remove_tag(self, organization_id: str, conversation_id: str, tag_id: str) -> None:
        await self._post("/tag/remove", {
            "organization_id": organization_id,
            "conversation_id": conversation_id,
            "tag_id": tag_id
        })

    async def create_task(
        self,
        organization_id: str,
        conversation_id: str,
        title: str,
        description: Optional[str] = "",
        due_in_days: Optional[int] = None
    ) -> None:
        await self._post("/task/create", {
            "organization_id": organization_id,
            "conversation_id": conversation_id,
            "title": title,
            "description": description or "",
            "due_in_days": due_in_days
        })

    async def notify_users(self, organization_id: str, conversation_id: str, message: str) -> None:
        await self._post("/notification/create", {
            "organization_id": organization_id,
            "conversation_id": conversation_id,
            "message": message
        })
