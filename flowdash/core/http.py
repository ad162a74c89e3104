"""Outbound HTTP helpers shared by the http_request node and the
connector endpoints.
"""

import json
from typing import Any

import httpx

from flowdash.core.connector_auth import BODYLESS_METHODS, OutboundRequest

SENSITIVE_HEADERS = frozenset({"authorization", "proxy-authorization", "cookie", "x-api-key"})
MAX_LOGGED_BODY = 4000


def build_url(base_url: str, endpoint: str | None) -> str:
    """Join a connector base URL and a node endpoint.

    Absolute endpoints are used as-is.
    """
    endpoint = (endpoint or "").strip()
    if endpoint.startswith(("http://", "https://")):
        return endpoint
    if not endpoint:
        return base_url
    base = base_url if base_url.endswith("/") else f"{base_url}/"
    return base + endpoint.lstrip("/")


def stringify_headers(headers: dict[str, Any]) -> dict[str, str]:
    return {str(k): str(v) for k, v in headers.items() if v is not None}


def redact_headers(headers: dict[str, str] | httpx.Headers) -> dict[str, str]:
    """Copy of headers with credentials masked, safe to log."""
    return {
        k: ("***" if k.lower() in SENSITIVE_HEADERS else v) for k, v in dict(headers).items()
    }


def redact_body(body: Any) -> Any:
    if isinstance(body, dict) and "access_token" in body:
        return {**body, "access_token": "***"}
    return body


async def send(
    client: httpx.AsyncClient,
    request: OutboundRequest,
    timeout: float,
) -> httpx.Response:
    """Send a prepared request.

    Dict and list bodies are sent as JSON, anything else as text.

    Raises:
        httpx.HTTPError: On timeouts and network failures
    """
    kwargs: dict[str, Any] = {
        "params": {k: v for k, v in request.params.items() if v is not None} or None,
        "headers": request.headers,
        "timeout": timeout,
    }
    if request.body is not None and request.method.upper() not in BODYLESS_METHODS:
        if isinstance(request.body, (dict, list)):
            kwargs["json"] = request.body
        elif isinstance(request.body, bytes):
            kwargs["content"] = request.body
        else:
            kwargs["content"] = str(request.body)
    return await client.request(request.method, request.url, **kwargs)


def is_json_response(response: httpx.Response) -> bool:
    content_type = response.headers.get("content-type", "")
    return "json" in content_type.lower()


def parse_body(response: httpx.Response, parse_json: bool | None = None) -> Any:
    """Decode a response body.

    `parse_json=None` parses JSON when the content type says so. Bodies
    that fail to parse are returned as text.
    """
    if not response.content:
        return None
    want_json = is_json_response(response) if parse_json is None else parse_json
    if want_json:
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return response.text
    return response.text


def truncate(value: Any, limit: int = MAX_LOGGED_BODY) -> Any:
    """Shorten large bodies before they are written to logs."""
    if isinstance(value, str):
        return value if len(value) <= limit else value[:limit] + "...(truncated)"
    text = json.dumps(value, default=str)
    if len(text) <= limit:
        return value
    return text[:limit] + "...(truncated)"
