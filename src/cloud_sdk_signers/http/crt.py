#  Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
#  SPDX-License-Identifier: Apache-2.0
#  pyright: reportMissingTypeStubs=false,reportUnknownMemberType=false
import logging
from collections.abc import Mapping
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from io import BytesIO
from threading import Lock
from typing import Any, Final

from awscrt import http as crt_http
from awscrt import io as crt_io
from awscrt.exceptions import AwsCrtError

from .._http import Field, Fields, HTTPResponse, serialize_body
from ..exceptions import CloudHTTPError
from ..interfaces import http as http_interfaces
from ..interfaces.http import FieldPosition

logger: Final = logging.getLogger(__name__)

FORM_CONTENT_TYPE: Final = "application/x-www-form-urlencoded; charset=utf-8"


class _CRTEventLoop:
    def __init__(self) -> None:
        self.bootstrap = self._initialize_default_loop()

    def _initialize_default_loop(self) -> crt_io.ClientBootstrap:
        event_loop_group = crt_io.EventLoopGroup(1)
        host_resolver = crt_io.DefaultHostResolver(event_loop_group)
        return crt_io.ClientBootstrap(event_loop_group, host_resolver)


class _CRTResponseCollector:
    """Gathers the status, fields and body chunks delivered by CRT callbacks."""

    def __init__(self) -> None:
        self._status: int | None = None
        self._fields = Fields()
        self._chunks: list[bytes] = []
        self._lock = Lock()

    def on_response(
        self, status_code: int, headers: list[tuple[str, str]], **kwargs: Any
    ) -> None:  # pragma: crt-callback
        with self._lock:
            self._status = status_code
            for header_name, header_val in headers:
                try:
                    self._fields[header_name].add(header_val)
                except KeyError:
                    self._fields[header_name] = Field(
                        name=header_name,
                        values=[header_val],
                        kind=FieldPosition.HEADER,
                    )

    def on_body(self, chunk: bytes, **kwargs: Any) -> None:  # pragma: crt-callback
        with self._lock:
            self._chunks.append(chunk)

    def to_response(self) -> HTTPResponse:
        with self._lock:
            if self._status is None:
                raise CloudHTTPError("Stream completed without a response status")
            return HTTPResponse(
                status=self._status,
                fields=self._fields,
                body=b"".join(self._chunks),
            )


@dataclass(kw_only=True)
class CRTHTTPClientConfig:
    """Configuration that applies to all requests made with a
    :py:class:`CRTHTTPClient`."""

    connect_timeout_ms: int = 3000
    """Milliseconds to wait for a connection to be established."""

    read_timeout: float | None = 30.0
    """Seconds to wait for a response to complete once the request is sent."""


ConnectionPoolKey = tuple[str, str, int | None]
ConnectionPoolDict = dict[ConnectionPoolKey, crt_http.HttpClientConnection]


class CRTHTTPClient(http_interfaces.HTTPClient):
    """A blocking HTTP/1.1 client built on ``awscrt``."""

    _HTTP_PORT = 80
    _HTTPS_PORT = 443

    def __init__(
        self,
        eventloop: _CRTEventLoop | None = None,
        client_config: CRTHTTPClientConfig | None = None,
    ) -> None:
        self._config = client_config or CRTHTTPClientConfig()
        if eventloop is None:
            eventloop = _CRTEventLoop()
        self._eventloop = eventloop
        self._client_bootstrap = self._eventloop.bootstrap
        self._tls_ctx = crt_io.ClientTlsContext(crt_io.TlsContextOptions())
        self._socket_options = crt_io.SocketOptions()
        self._socket_options.connect_timeout_ms = self._config.connect_timeout_ms
        self._connections: ConnectionPoolDict = {}
        self._connections_lock = Lock()

    def send(self, request: http_interfaces.Request) -> HTTPResponse:
        """Send HTTP request using awscrt client and wait for the full response.

        :param request: The request including destination URI, fields, payload.
        """
        crt_request = self._marshal_request(request)
        collector = _CRTResponseCollector()
        try:
            connection = self._get_connection(request.destination)
            crt_stream = connection.request(
                crt_request, collector.on_response, collector.on_body
            )
            crt_stream.activate()
            crt_stream.completion_future.result(timeout=self._config.read_timeout)
        except (AwsCrtError, FutureTimeoutError) as e:
            raise CloudHTTPError(
                f"{request.method} {request.destination.host} failed: {e!r}"
            ) from e
        response = collector.to_response()
        logger.debug(
            "%s %s returned %s",
            request.method,
            request.destination.host,
            response.status,
        )
        return response

    def _get_connection(
        self, url: http_interfaces.URI
    ) -> crt_http.HttpClientConnection:
        # TODO: Use CRT connection pooling instead of this basic kind
        connection_key = (url.scheme, url.host, url.port)
        with self._connections_lock:
            connection = self._connections.get(connection_key)
            if connection is not None and connection.is_open():
                return connection

            connect_future = self._build_new_connection(url)
            connection = connect_future.result()
            self._connections[connection_key] = connection
            return connection

    def _build_new_connection(
        self, url: http_interfaces.URI
    ) -> Future[crt_http.HttpClientConnection]:
        if url.scheme == "http":
            port = self._HTTP_PORT
            tls_connection_options = None
        elif url.scheme == "https":
            port = self._HTTPS_PORT
            tls_connection_options = self._tls_ctx.new_connection_options()
            tls_connection_options.set_server_name(url.host)
            tls_connection_options.set_alpn_list(["http/1.1"])
        else:
            raise CloudHTTPError(
                f"CRTHTTPClient does not support URL scheme {url.scheme}"
            )
        if url.port is not None:
            port = url.port

        connect_future: Future[crt_http.HttpClientConnection] = (
            crt_http.HttpClientConnection.new(
                bootstrap=self._client_bootstrap,
                host_name=url.host,
                port=port,
                socket_options=self._socket_options,
                tls_connection_options=tls_connection_options,
            )
        )
        return connect_future

    def _render_path(self, url: http_interfaces.URI) -> str:
        path = url.path if url.path else "/"
        query = f"?{url.query}" if url.query else ""
        return f"{path}{query}"

    def _marshal_request(
        self, request: http_interfaces.Request
    ) -> crt_http.HttpRequest:
        """Create :py:class:`awscrt.http.HttpRequest` from a request."""
        body = serialize_body(request.body)
        headers_list: list[tuple[str, str]] = []
        if "host" not in request.fields:
            headers_list.append(("Host", request.destination.netloc))
        if body and "content-length" not in request.fields:
            headers_list.append(("Content-Length", str(len(body))))
        if isinstance(request.body, Mapping) and "content-type" not in request.fields:
            headers_list.append(("Content-Type", FORM_CONTENT_TYPE))

        for fld in request.fields:
            if fld.kind is not FieldPosition.HEADER:
                continue
            for val in fld.values:
                headers_list.append((fld.name, val))

        return crt_http.HttpRequest(
            method=request.method,
            path=self._render_path(request.destination),
            headers=crt_http.HttpHeaders(headers_list),
            body_stream=BytesIO(body),
        )
