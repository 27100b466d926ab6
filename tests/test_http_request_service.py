import pytest

from services.internal.http_request_service import HttpRequestService
from exceptions.flow_exception import ExternalCallException


@pytest.fixture
def http_request_service(log_util):
    return HttpRequestService(log_util=log_util)


async def test_non_ascii_header_value_raises_external_call_error(http_request_service):
    with pytest.raises(ExternalCallException) as error:
        await http_request_service.call(
            method="POST",
            url="https://crm.example.com/leads",
            headers={"X-Nome": "João"},
            body={"nome": "João"},
            timeout=1
        )
    assert error.value.is_timeout is False


async def test_unsupported_scheme_raises_external_call_error(http_request_service):
    with pytest.raises(ExternalCallException):
        await http_request_service.call(method="GET", url="ftp://crm.example.com/leads", timeout=1)
