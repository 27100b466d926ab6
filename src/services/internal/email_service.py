import httpx

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Exceptions
from exceptions.flow_exception import ExternalCallException


class EmailService:
    """Service for sending transactional email through the organization's mail relay."""
    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils):
        self.log_util = log_util
        self.email_service_url = str(environment_utils.get_env_variable("EMAIL_SERVICE_URL")).rstrip("/")
        self.timeout = float(environment_utils.get_env_variable("COLLABORATOR_TIMEOUT_SECONDS"))

    async def send(self, organization_id: str, to: str, subject: str, html: str) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(f"{self.email_service_url}/send", json={
                    "organization_id": organization_id,
                    "to": to,
                    "subject": subject,
                    "html": html
                })
        except httpx.TimeoutException:
            raise ExternalCallException(message="Timeout calling email service", is_timeout=True, status_code=504)
        except httpx.HTTPError as e:
            raise ExternalCallException(message=f"Error calling email service: {str(e)}")

        if response.status_code >= 300:
            self.log_util.error(
                service_name="EmailService",
                message=f"Email service returned error: {response.status_code} - {response.text[:300]}"
            )
            raise ExternalCallException(message=f"Email service returned {response.status_code}")
