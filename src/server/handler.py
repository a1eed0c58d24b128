from __future__ import annotations

import json
import logging
import os
import re
from typing import Any, Dict, Iterable, Optional

import boto3
from botocore.exceptions import ClientError

from common.errors import InvalidLocation, TransientError, Unauthorized
from state.authority import ProgressStore
from state.models import DEFAULT_TOTAL_LOCATIONS, ProgressRecord, identity_tag
from state.s3_store import DEFAULT_PREFIX, S3RecordBackend


logger = logging.getLogger(__name__)

# Environment variable names expected by the deployment
ENV_STATE_BUCKET = "STATE_BUCKET"
ENV_STATE_PREFIX = "STATE_PREFIX"  # optional; defaults to "progress/"
ENV_PARAM_PREFIX = "PARAM_PREFIX"
ENV_TOTAL_LOCATIONS = "TOTAL_LOCATIONS"  # optional; defaults to 3

_WRITE_PATH_RE = re.compile(r"^/progress/locations/([^/]+)/?$")

# Built once per warm container
_STORE: Optional[ProgressStore] = None


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


def _load_ssm_params(prefix: str, names: Iterable[str]) -> Dict[str, Optional[str]]:
    ssm = boto3.client("ssm")
    out: Dict[str, Optional[str]] = {k: None for k in names}
    for name in names:
        full = f"{prefix}{name}"
        try:
            resp = ssm.get_parameter(Name=full, WithDecryption=True)
        except ClientError as e:
            # Leave as None if parameter missing or access denied
            code = e.response.get("Error", {}).get("Code")
            if code in ("ParameterNotFound", "AccessDeniedException"):
                out[name] = None
                continue
            raise
        val = resp.get("Parameter", {}).get("Value")
        out[name] = val if isinstance(val, str) and val != "" else None
    return out


def _build_store() -> ProgressStore:
    bucket = _require(_getenv(ENV_STATE_BUCKET), ENV_STATE_BUCKET)
    prefix = _getenv(ENV_STATE_PREFIX, DEFAULT_PREFIX) or DEFAULT_PREFIX
    param_prefix = _require(_getenv(ENV_PARAM_PREFIX), ENV_PARAM_PREFIX)

    raw_total = _getenv(ENV_TOTAL_LOCATIONS, str(DEFAULT_TOTAL_LOCATIONS))
    try:
        total = int(raw_total or DEFAULT_TOTAL_LOCATIONS)
    except ValueError as ex:
        raise RuntimeError(f"Invalid {ENV_TOTAL_LOCATIONS}: {raw_total!r}") from ex

    params = _load_ssm_params(param_prefix, ["fernet_key"])
    fernet_key = _require(params.get("fernet_key"), f"{param_prefix}fernet_key")

    backend = S3RecordBackend(bucket=bucket, prefix=prefix, fernet_key=fernet_key)
    return ProgressStore(backend, total_locations=total)


def _get_store() -> ProgressStore:
    global _STORE
    if _STORE is None:
        _STORE = _build_store()
    return _STORE


def _identity_from_event(event: Dict[str, Any]) -> Optional[str]:
    """Caller identity as established by the API Gateway authorizer (lambda or JWT)."""
    authorizer = (event.get("requestContext") or {}).get("authorizer") or {}
    candidates = [
        (authorizer.get("lambda") or {}).get("principalId"),
        ((authorizer.get("jwt") or {}).get("claims") or {}).get("sub"),
        authorizer.get("principalId"),
    ]
    for c in candidates:
        if isinstance(c, str) and c.strip():
            return c.strip()
    return None


def _json_response(status: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "statusCode": status,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps(body, separators=(",", ":")),
    }


def _record_response(record: ProgressRecord) -> Dict[str, Any]:
    return {
        "statusCode": 200,
        "headers": {"Content-Type": "application/json"},
        "body": record.model_dump_json(),
    }


def _parse_sequence(raw: str, total: int) -> int:
    s = raw.strip()
    # Anything longer than the total, once leading zeros are gone, is out of range
    if not (s.isascii() and s.isdigit()) or len(s.lstrip("0")) > len(str(total)):
        raise InvalidLocation(s[:20], total)
    return int(s)


def handle(event: Dict[str, Any], store: ProgressStore) -> Dict[str, Any]:
    """Route one API Gateway (HTTP API, payload v2) request to the store."""
    identity = _identity_from_event(event)
    if identity is None:
        return _json_response(401, {"error": "unauthorized"})

    http = (event.get("requestContext") or {}).get("http") or {}
    method = str(http.get("method") or event.get("httpMethod") or "").upper()
    path = str(event.get("rawPath") or http.get("path") or "")

    try:
        if method == "GET" and path.rstrip("/") == "/progress":
            return _record_response(store.read(identity))

        m = _WRITE_PATH_RE.match(path)
        if method == "POST" and m:
            record = store.write(identity, _parse_sequence(m.group(1), store.total_locations))
            return _record_response(record)
    except InvalidLocation as ex:
        logger.info("Rejected invalid location for %s: %s", identity_tag(identity), ex)
        return _json_response(400, {"error": "invalid_location", "message": str(ex)})
    except Unauthorized:
        return _json_response(401, {"error": "unauthorized"})
    except TransientError as ex:
        logger.warning("Progress store busy: %s", ex)
        return _json_response(503, {"error": "unavailable"})
    except ClientError:
        logger.error("S3 failure while serving %s %s", method, path, exc_info=True)
        return _json_response(503, {"error": "unavailable"})
    except ValueError:
        logger.error("Unreadable progress record for %s", identity_tag(identity), exc_info=True)
        return _json_response(500, {"error": "corrupt_record"})

    return _json_response(404, {"error": "not_found"})


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    return handle(event, _get_store())
