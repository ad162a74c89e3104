"""HTTP request node.

Calls an external API, either through a stored connector (base URL,
default headers and auth) or against a plain URL.
"""

from typing import Any

import httpx

from flowdash.core.connector_auth import OutboundRequest
from flowdash.core.errors import AuthError, ErrorKind
from flowdash.core.http import (
    build_url,
    parse_body,
    redact_body,
    redact_headers,
    send,
    stringify_headers,
    truncate,
)
from flowdash.core.ports import ConnectorNotFoundError
from flowdash.models.execution import LogLevel
from flowdash.models.node import (
    HttpRequestConfig,
    NodeCategory,
    NodeDefinition,
    NodeField,
    NodeFieldType,
    NodeType,
)
from flowdash.nodes.base import BaseNode, NodeContext, NodeExecutionError


class HttpRequestNode(BaseNode[HttpRequestConfig]):
    """Sends one HTTP request.

    Output:
        {"status": 200, "ok": true, "headers": {...}, "result": <parsed body>}

    Non-2xx responses fail the node with HttpError unless
    `fail_on_error` is false. An AuthError from the connector fails the
    node before anything is sent.
    """

    error_kind = ErrorKind.HTTP

    def get_definition(self) -> NodeDefinition:
        """Get node definition."""
        return NodeDefinition(
            type=NodeType.HTTP_REQUEST,
            display_name="HTTP Request",
            description="Call an API endpoint, optionally through a connector",
            category=NodeCategory.ACTION,
            uses_connector=True,
            fields=[
                NodeField(
                    name="connector_id",
                    display_name="Connector",
                    type=NodeFieldType.STRING,
                    description="Connector supplying base URL, headers and auth",
                    required=False,
                ),
                NodeField(
                    name="endpoint",
                    display_name="Endpoint",
                    type=NodeFieldType.STRING,
                    description="Path joined to the connector base URL",
                    required=False,
                ),
                NodeField(
                    name="url",
                    display_name="URL",
                    type=NodeFieldType.STRING,
                    description="Absolute URL when no connector is used",
                    required=False,
                ),
                NodeField(
                    name="method",
                    display_name="Method",
                    type=NodeFieldType.STRING,
                    required=False,
                    default="GET",
                    options=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"],
                ),
                NodeField(
                    name="headers",
                    display_name="Headers",
                    type=NodeFieldType.JSON,
                    required=False,
                    default={},
                ),
                NodeField(
                    name="query_params",
                    display_name="Query Parameters",
                    type=NodeFieldType.JSON,
                    required=False,
                    default={},
                ),
                NodeField(
                    name="body",
                    display_name="Body",
                    type=NodeFieldType.ANY,
                    required=False,
                ),
                NodeField(
                    name="parse_json",
                    display_name="Parse JSON",
                    type=NodeFieldType.BOOLEAN,
                    description="Defaults to the response content type",
                    required=False,
                ),
                NodeField(
                    name="fail_on_error",
                    display_name="Fail on Error",
                    type=NodeFieldType.BOOLEAN,
                    required=False,
                    default=True,
                ),
                NodeField(
                    name="timeout",
                    display_name="Timeout (s)",
                    type=NodeFieldType.NUMBER,
                    required=False,
                    default=30,
                ),
            ],
            tags=["http", "api", "connector"],
        )

    async def execute(self, config: HttpRequestConfig, context: NodeContext) -> dict[str, Any]:
        """Authorize, send and decode the request."""
        request = OutboundRequest(
            method=config.method,
            url=config.url or "",
            headers=stringify_headers(config.headers),
            params=dict(config.query_params),
            body=config.body,
        )

        if config.connector_id:
            request = await self._authorize(config, request, context)
        elif config.endpoint:
            request.url = build_url(request.url, config.endpoint)

        timeout = config.timeout or context.http_timeout
        context.log(
            LogLevel.INFO,
            f"{request.method} {request.url}",
            data={
                "request": {
                    "method": request.method,
                    "url": request.url,
                    "headers": redact_headers(request.headers),
                    "params": redact_body(request.params),
                    "body": truncate(redact_body(request.body)),
                }
            },
        )

        try:
            if context.http is not None:
                response = await send(context.http, request, timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await send(client, request, timeout)
        except httpx.TimeoutException as e:
            raise NodeExecutionError(
                message=f"Request timed out after {timeout}s",
                kind=ErrorKind.HTTP,
                details={"url": request.url, "method": request.method},
            ) from e
        except httpx.HTTPError as e:
            raise NodeExecutionError(
                message=f"Request failed: {type(e).__name__}: {e}",
                kind=ErrorKind.HTTP,
                details={"url": request.url, "method": request.method},
            ) from e

        result = parse_body(response, config.parse_json)
        ok = response.is_success

        if not ok and config.fail_on_error:
            raise NodeExecutionError(
                message=f"{request.method} {request.url} returned {response.status_code}",
                kind=ErrorKind.HTTP,
                http_status=response.status_code,
                details={"response": truncate(result), "url": request.url},
            )

        context.log(
            LogLevel.INFO if ok else LogLevel.WARNING,
            f"Response {response.status_code}",
            data={
                "response": {
                    "status": response.status_code,
                    "headers": redact_headers(response.headers),
                    "body": truncate(result),
                }
            },
        )
        return {
            "status": response.status_code,
            "ok": ok,
            "headers": dict(response.headers),
            "result": result,
        }

    async def _authorize(
        self,
        config: HttpRequestConfig,
        request: OutboundRequest,
        context: NodeContext,
    ) -> OutboundRequest:
        if context.connectors is None or context.auth is None:
            raise NodeExecutionError(
                message="Connectors are not available in this execution",
                kind=ErrorKind.VALIDATION,
            )
        try:
            connector = await context.connectors.get_connector(config.connector_id)
        except ConnectorNotFoundError as e:
            raise NodeExecutionError(
                message=str(e),
                kind=ErrorKind.VALIDATION,
                details={"connector_id": config.connector_id},
            ) from e

        # Node headers win over connector defaults
        request.headers = {**connector.headers, **request.headers}
        request.url = build_url(connector.base_url, config.endpoint or config.url)

        try:
            authorized = await context.auth.authorize(connector, request)
        except AuthError as e:
            if e.connector is not None:
                await context.connectors.save_connector(e.connector)
            raise

        if authorized.token_refreshed:
            await context.connectors.save_connector(authorized.connector)
            context.log(
                LogLevel.INFO,
                f"Refreshed OAuth2 token for connector '{connector.name}'",
                data={"connector_id": connector.id},
            )
        return authorized.request
