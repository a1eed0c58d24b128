from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from state.models import ProgressRecord

from .errors import InvalidLocation, ProgressSyncError, TransientError, Unauthorized


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0

_RETRYABLE_STATUS = (408, 425, 429, 500, 502, 503, 504)


class HttpProgressStore:
    """
    Client for the authoritative progress store's HTTP surface.

    Endpoints
    - GET  /progress                         -> ProgressRecord JSON
    - POST /progress/locations/{sequence}    -> ProgressRecord JSON

    Notes
    - The identity is sent as a bearer token; the server side resolves it through
      its authorizer.
    - Each request has a bounded timeout. No retries happen here: callers wrap
      calls in `RetryExecutor`, which decides from the error type.
    - Connect failures raise `TransientError(maybe_applied=False)`; failures after
      a write was sent raise `TransientError(maybe_applied=True)`.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.Client(base_url=self._base_url, timeout=self._timeout)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HttpProgressStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def read(self, identity: str) -> ProgressRecord:
        return self._request("GET", "/progress", identity, mutating=False)

    def write(self, identity: str, sequence_number: int) -> ProgressRecord:
        return self._request(
            "POST",
            f"/progress/locations/{sequence_number}",
            identity,
            mutating=True,
            sequence_number=sequence_number,
        )

    # --------------- Internal ---------------
    def _request(
        self,
        method: str,
        path: str,
        identity: str,
        *,
        mutating: bool,
        sequence_number: Optional[int] = None,
    ) -> ProgressRecord:
        if not identity:
            raise Unauthorized("Missing caller identity")
        headers = {"Authorization": f"Bearer {identity}", "Accept": "application/json"}
        url = f"{self._base_url}{path}"

        try:
            resp = self._client.request(method, url, headers=headers, timeout=self._timeout)
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            raise TransientError(f"Could not reach progress service: {exc}", maybe_applied=False) from exc
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise TransientError(f"Progress service request failed: {exc}", maybe_applied=mutating) from exc

        if resp.status_code == 200:
            return self._parse_record(resp, mutating=mutating)

        logger.debug("%s %s -> HTTP %d", method, path, resp.status_code)
        if resp.status_code in (401, 403):
            raise Unauthorized(f"HTTP {resp.status_code} from progress service")
        if resp.status_code in _RETRYABLE_STATUS:
            raise TransientError(f"HTTP {resp.status_code} from progress service", maybe_applied=mutating)
        if resp.status_code in (400, 404, 422) and self._error_code(resp) == "invalid_location":
            raise InvalidLocation(sequence_number if sequence_number is not None else 0)
        raise ProgressSyncError(f"HTTP {resp.status_code} from progress service: {resp.text[:200]}")

    @staticmethod
    def _error_code(resp: httpx.Response) -> Optional[str]:
        try:
            payload: Dict[str, Any] = resp.json()
        except ValueError:
            return None
        if isinstance(payload, dict):
            code = payload.get("error")
            return code if isinstance(code, str) else None
        return None

    @staticmethod
    def _parse_record(resp: httpx.Response, *, mutating: bool) -> ProgressRecord:
        try:
            return ProgressRecord.model_validate_json(resp.content)
        except ValidationError as ve:
            # A garbled body says nothing about whether the write landed
            raise TransientError(f"Malformed progress payload: {ve}", maybe_applied=mutating) from ve


__all__ = ["HttpProgressStore", "DEFAULT_TIMEOUT"]
