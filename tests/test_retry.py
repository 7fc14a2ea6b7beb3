import httpx
import pytest

from machine_controller.clients.http import RequestFailure, RetryPolicy, request_with_retry


def test_request_with_retry_raises_after_attempts():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(status_code=500, request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with pytest.raises(RequestFailure) as excinfo:
        request_with_retry(
            client, "GET", "http://example.test", RetryPolicy(attempts=2, sleep_sec=0)
        )
    assert len(calls) == 2
    assert excinfo.value.attempts == 2
    assert excinfo.value.status_code == 500


def test_request_with_retry_succeeds():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(
            status_code=200, json={"data": "ok"}, request=request
        )
    )
    client = httpx.Client(transport=transport)
    response = request_with_retry(
        client, "GET", "http://example.test", RetryPolicy(attempts=2, sleep_sec=0)
    )
    assert response.json() == {"data": "ok"}


def test_client_errors_are_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(
            status_code=400,
            json={"data": None, "errors": {"memory": "value must be at least 16"}},
            request=request,
        )

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with pytest.raises(RequestFailure) as excinfo:
        request_with_retry(
            client, "POST", "http://example.test", RetryPolicy(attempts=3, sleep_sec=0)
        )
    assert len(calls) == 1
    assert excinfo.value.is_client_error is True
    assert "memory: value must be at least 16" in excinfo.value.detail


def test_reason_phrase_describes_null_data_errors():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(
            status_code=500,
            json={"data": None},
            extensions={"reason_phrase": b"Configuration file does not exist"},
            request=request,
        )
    )
    client = httpx.Client(transport=transport)
    with pytest.raises(RequestFailure, match="Configuration file does not exist"):
        request_with_retry(
            client, "GET", "http://example.test", RetryPolicy(attempts=1, sleep_sec=0)
        )


def test_connection_errors_are_reported():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with pytest.raises(RequestFailure) as excinfo:
        request_with_retry(
            client, "GET", "http://example.test", RetryPolicy(attempts=1, sleep_sec=0)
        )
    assert excinfo.value.error_type == "ConnectError"
    assert excinfo.value.status_code is None
    assert excinfo.value.is_client_error is False
