from typing import Optional, List, Dict, Any
import httpx

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Exceptions
from exceptions.flow_exception import ExternalCallException


class ChannelService:
    """
    Client for the messaging service that owns conversations and the WhatsApp connections.
    """
    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils):
        self.log_util = log_util
        self.channel_service_url = str(environment_utils.get_env_variable("CHANNEL_SERVICE_URL")).rstrip("/")
        self.timeout = float(environment_utils.get_env_variable("COLLABORATOR_TIMEOUT_SECONDS"))

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.channel_service_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload, headers={"Content-Type": "application/json"})
        except httpx.TimeoutException:
            raise ExternalCallException(message=f"Timeout calling channel service {path}", is_timeout=True, status_code=504)
        except httpx.HTTPError as e:
            raise ExternalCallException(message=f"Error calling channel service {path}: {str(e)}")

        if response.status_code >= 300:
            self.log_util.error(
                service_name="ChannelService",
                message=f"Channel service {path} returned error: {response.status_code} - {response.text[:300]}"
            )
            raise ExternalCallException(message=f"Channel service {path} returned {response.status_code}")
        try:
            return response.json()
        except ValueError:
            return {}

    async def send_message(
        self,
        conversation_id: str,
        text: Optional[str],
        message_type: str = "text",
        media_url: Optional[str] = None
    ) -> None:
        await self._post("/message/send", {
            "conversation_id": conversation_id,
            "message_type": message_type,
            "text": text or "",
            "media_url": media_url
        })

    async def send_typing(self, conversation_id: str, duration_seconds: float) -> None:
        await self._post("/message/typing", {
            "conversation_id": conversation_id,
            "duration_seconds": duration_seconds
        })

    async def send_external_message(self, conversation_id: str, phone_number: str, text: str) -> None:
        """Send a WhatsApp message to a number outside the conversation, through the same connection."""
        await self._post("/message/external", {
            "conversation_id": conversation_id,
            "phone_number": phone_number,
            "text": text
        })

    async def transfer_conversation(self, conversation_id: str, transfer_type: str, target_id: Optional[str]) -> None:
        await self._post("/conversation/transfer", {
            "conversation_id": conversation_id,
            "transfer_type": transfer_type,
            "target_id": target_id
        })

    async def close_conversation(self, conversation_id: str) -> None:
        await self._post("/conversation/close", {"conversation_id": conversation_id})

    async def get_history(self, conversation_id: str, limit: int = 10) -> List[Dict[str, str]]:
        """
        Last `limit` turns of the conversation, oldest first, as {"role": "user"|"assistant", "content": str}
        """
        url = f"{self.channel_service_url}/conversation/{conversation_id}/history"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url, params={"limit": limit})
        except httpx.TimeoutException:
            raise ExternalCallException(message="Timeout fetching conversation history", is_timeout=True, status_code=504)
        except httpx.HTTPError as e:
            raise ExternalCallException(message=f"Error fetching conversation history: {str(e)}")

        if response.status_code != 200:
            raise ExternalCallException(message=f"Channel service history returned {response.status_code}")

        turns = []
        for message in response.json().get("messages", []):
            content = message.get("content") or ""
            if not content:
                continue
            turns.append({
                "role": "assistant" if message.get("from_me") else "user",
                "content": content
            })
        return turns[-limit:] if limit else []
