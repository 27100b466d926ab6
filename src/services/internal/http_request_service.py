import json
from typing import Optional, Dict, Any
import httpx

# Utils
from utils.log_utils import LogUtil

# Models
from models.node_result_data import HttpCallResult

# Exceptions
from exceptions.flow_exception import ExternalCallException


class HttpRequestService:
    """Performs the user-configured HTTP calls of webhook nodes."""
    def __init__(self, log_util: LogUtil):
        self.log_util = log_util

    async def call(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        timeout: float = 30.0
    ) -> HttpCallResult:
        """
        Issue the request and return status and body.
        Any status code is returned as a result. Transport errors, timeouts and requests that cannot
        be built raise ExternalCallException.
        """
        request_kwargs: Dict[str, Any] = {"headers": headers or {}}
        if method.upper() != "GET" and body not in (None, ""):
            if isinstance(body, (dict, list)):
                request_kwargs["json"] = body
            else:
                request_kwargs["content"] = str(body)

        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.request(method.upper(), url, **request_kwargs)
        except httpx.TimeoutException:
            self.log_util.error(
                service_name="HttpRequestService",
                message=f"Timeout calling {method} {url} after {timeout}s"
            )
            raise ExternalCallException(message=f"Timeout calling {url}", is_timeout=True, status_code=504)
        except httpx.HTTPError as e:
            self.log_util.error(
                service_name="HttpRequestService",
                message=f"Error calling {method} {url}: {str(e)}"
            )
            raise ExternalCallException(message=f"Error calling {url}: {str(e)}")
        except (httpx.InvalidURL, ValueError) as e:
            # Request could not be built (malformed URL, non-ASCII header value)
            self.log_util.error(
                service_name="HttpRequestService",
                message=f"Invalid request {method} {url}: {str(e)}"
            )
            raise ExternalCallException(message=f"Invalid request to {url}: {str(e)}", status_code=400)

        json_body = None
        try:
            json_body = response.json()
        except (json.JSONDecodeError, ValueError):
            json_body = None

        return HttpCallResult(status_code=response.status_code, body=response.text, json_body=json_body)
