from typing import Optional, List, Dict
import httpx

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Exceptions
from exceptions.flow_exception import ExternalCallException


class AIService:
    """
    Client for an OpenAI-compatible chat completions endpoint.
    URL, key and default model are injected from configuration at construction time.
    """
    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils):
        self.log_util = log_util
        self.api_url = environment_utils.get_env_variable("AI_API_URL")
        self.api_key = environment_utils.get_env_variable("AI_API_KEY")
        self.default_model = environment_utils.get_env_variable("AI_DEFAULT_MODEL")
        self.default_timeout = float(environment_utils.get_env_variable("AI_TIMEOUT_SECONDS"))

    async def complete(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        temperature: float = 0.7,
        timeout: Optional[float] = None
    ) -> str:
        """
        Single completion call, never retried.
        """
        if not self.api_key:
            raise ExternalCallException(message="AI provider is not configured")

        payload = {
            "model": model or self.default_model,
            "messages": messages,
            "temperature": temperature
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }

        try:
            async with httpx.AsyncClient(timeout=timeout or self.default_timeout) as client:
                response = await client.post(self.api_url, json=payload, headers=headers)
        except httpx.TimeoutException:
            self.log_util.error(service_name="AIService", message=f"Timeout calling AI provider (model: {payload['model']})")
            raise ExternalCallException(message="AI provider timeout", is_timeout=True, status_code=504)
        except httpx.HTTPError as e:
            self.log_util.error(service_name="AIService", message=f"Error calling AI provider: {str(e)}")
            raise ExternalCallException(message=f"AI provider error: {str(e)}")

        if response.status_code != 200:
            self.log_util.error(
                service_name="AIService",
                message=f"AI provider returned error: {response.status_code} - {response.text[:300]}"
            )
            raise ExternalCallException(message=f"AI provider returned {response.status_code}")

        try:
            data = response.json()
            return (data["choices"][0]["message"]["content"] or "").strip()
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ExternalCallException(message=f"Unexpected AI provider response: {str(e)}")
