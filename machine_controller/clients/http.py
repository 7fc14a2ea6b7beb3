import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 1
    sleep_sec: float = 0


class RequestFailure(RuntimeError):
    def __init__(
        self,
        *,
        method: str,
        url: str,
        attempts: int,
        error_type: str,
        detail: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ):
        self.method = method
        self.url = url
        self.attempts = attempts
        self.error_type = error_type
        self.detail = detail
        self.status_code = status_code
        self.response_text = response_text
        super().__init__(
            f"{method} {url} failed after {attempts} attempt(s) ({error_type}: {detail})"
        )

    @property
    def is_client_error(self) -> bool:
        return self.status_code is not None and 400 <= self.status_code < 500


def _describe_error_body(response: httpx.Response) -> str:
    # Proxmox puts parameter validation failures under "errors" and the
    # human readable cause in the HTTP reason phrase.
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        errors = payload.get("errors")
        if isinstance(errors, dict):
            return "; ".join(f"{key}: {value}" for key, value in sorted(errors.items()))
        if payload.get("data") is None:
            return response.reason_phrase or ""
    body = (response.text or "").strip()
    if body and body != "null":
        return body[:240]
    return response.reason_phrase or ""


def _failure_from_status(
    method: str, url: str, attempts: int, exc: httpx.HTTPStatusError
) -> RequestFailure:
    status_code = exc.response.status_code
    body = _describe_error_body(exc.response)
    return RequestFailure(
        method=method,
        url=url,
        attempts=attempts,
        error_type=exc.__class__.__name__,
        detail=f"HTTP {status_code}: {body}" if body else f"HTTP {status_code}",
        status_code=status_code,
        response_text=exc.response.text,
    )


def request_with_retry(
    client: httpx.Client, method: str, url: str, retry: RetryPolicy, **kwargs: Any
) -> httpx.Response:
    """Send one request, retrying transport errors and 5xx answers.

    4xx answers are final: Proxmox reports invalid parameters and missing
    objects that way and repeating the call cannot change the outcome.
    """
    for attempt in range(1, retry.attempts + 1):
        try:
            response = client.request(method, url, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as exc:
            failure = _failure_from_status(method, url, attempt, exc)
            if failure.is_client_error or attempt == retry.attempts:
                raise failure from exc
        except httpx.RequestError as exc:
            failure = RequestFailure(
                method=method,
                url=url,
                attempts=attempt,
                error_type=exc.__class__.__name__,
                detail=str(exc),
            )
            if attempt == retry.attempts:
                raise failure from exc
        logger.warning(
            "retrying request method=%s url=%s attempt=%s detail=%s",
            method,
            url,
            attempt,
            failure.detail,
        )
        time.sleep(retry.sleep_sec)
    raise ValueError(f"retry policy needs at least one attempt, got {retry.attempts}")
