# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

import http
import http.server
import inspect
import json
import threading
from enum import IntEnum
from typing import Any, Callable, Dict, List, Optional

from loguru import logger as LOG

import swarmnet.interfaces
from swarmnet.errors import BindError, GatewayError, InvalidArgumentError

JSONRPC_VERSION = "2.0"


class ErrorCode(IntEnum):
    # Standard JSON RPC errors
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603

    # Gateway errors
    SERVER_ERROR = -32000


def error_response(request_id, code: ErrorCode, message: str, data=None):
    error = {"code": int(code), "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error}


class RpcModule:
    """
    Set of named JSON-RPC methods. Modules built by independent API
    implementations are merged into the one the server dispatches to.
    """

    def __init__(self):
        self._methods: Dict[str, Callable[..., Any]] = {}

    def register_method(self, name: str, fn: Callable[..., Any]):
        if name in self._methods:
            raise ValueError(f"Method {name} is already registered")
        self._methods[name] = fn

    def merge(self, other: "RpcModule"):
        duplicates = set(self._methods) & set(other._methods)
        if duplicates:
            raise ValueError(f"Cannot merge modules, duplicate methods: {duplicates}")
        self._methods.update(other._methods)

    def method_names(self) -> List[str]:
        return sorted(self._methods)

    def call(self, request) -> Optional[dict]:
        """
        Dispatch one request object. Returns ``None`` for notifications.
        """
        if (
            not isinstance(request, dict)
            or request.get("jsonrpc") != JSONRPC_VERSION
            or not isinstance(request.get("method"), str)
        ):
            return error_response(None, ErrorCode.INVALID_REQUEST, "Invalid request")

        is_notification = "id" not in request
        request_id = request.get("id")
        response = self._invoke(request_id, request["method"], request.get("params"))
        return None if is_notification else response

    def _invoke(self, request_id, method, params):
        fn = self._methods.get(method)
        if fn is None:
            return error_response(
                request_id, ErrorCode.METHOD_NOT_FOUND, f"Method not found: {method}"
            )

        if params is None:
            args, kwargs = [], {}
        elif isinstance(params, list):
            args, kwargs = params, {}
        elif isinstance(params, dict):
            args, kwargs = [], params
        else:
            return error_response(
                request_id, ErrorCode.INVALID_PARAMS, "Params must be an array or object"
            )

        try:
            inspect.signature(fn).bind(*args, **kwargs)
        except TypeError as e:
            return error_response(request_id, ErrorCode.INVALID_PARAMS, str(e))

        try:
            result = fn(*args, **kwargs)
        except InvalidArgumentError as e:
            return error_response(request_id, ErrorCode.INVALID_PARAMS, str(e))
        except GatewayError as e:
            return error_response(request_id, ErrorCode.SERVER_ERROR, str(e))
        except Exception as e:
            LOG.exception(f"Unexpected error in {method}")
            return error_response(request_id, ErrorCode.INTERNAL_ERROR, repr(e))
        return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}

    def handle(self, payload: bytes) -> Optional[bytes]:
        try:
            request = json.loads(payload)
        except ValueError as e:
            response = error_response(None, ErrorCode.PARSE_ERROR, f"Parse error: {e}")
            return json.dumps(response).encode()

        if isinstance(request, list):
            if not request:
                response = error_response(
                    None, ErrorCode.INVALID_REQUEST, "Empty batch"
                )
            else:
                response = [r for r in map(self.call, request) if r is not None]
                if not response:
                    return None
        else:
            response = self.call(request)
            if response is None:
                return None
        return json.dumps(response).encode()


class JsonRpcRequestHandler(http.server.BaseHTTPRequestHandler):
    def __init__(self, request, client_address, server):
        self.module = server.module
        super(JsonRpcRequestHandler, self).__init__(request, client_address, server)

    def do_POST(self):
        content_length = int(self.headers.get("Content-Length", 0))
        body = self.module.handle(self.rfile.read(content_length))
        if body is None:
            self.send_response(http.HTTPStatus.NO_CONTENT)
            self.end_headers()
            return
        self.send_response(http.HTTPStatus.OK)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        LOG.trace(f"JSON-RPC server: {format % args}")


class HttpServer(http.server.ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, server_address):
        self.module = RpcModule()
        super(HttpServer, self).__init__(server_address, JsonRpcRequestHandler)

    def local_addr(self) -> swarmnet.interfaces.SocketAddress:
        host, port = self.server_address[:2]
        return swarmnet.interfaces.SocketAddress(host, port)

    def start(self, module: RpcModule) -> "HttpServerHandle":
        self.module = module
        thread = threading.Thread(
            target=self.serve_forever, name="jsonrpc-server", daemon=True
        )
        thread.start()
        LOG.info(
            f"JSON-RPC server listening on {self.local_addr()} ({len(module.method_names())} methods)"
        )
        return HttpServerHandle(self, thread)


class HttpServerHandle:
    """
    Owns a running :py:class:`HttpServer` and its listening socket.
    """

    def __init__(self, server: HttpServer, thread: threading.Thread):
        self._server = server
        self._thread = thread
        self._stop_callbacks: List[Callable[[], None]] = []

    @property
    def is_running(self):
        return self._server is not None

    def add_stop_callback(self, fn: Callable[[], None]):
        """
        Run ``fn`` once the server has stopped accepting requests.
        """
        self._stop_callbacks.append(fn)

    def stop(self):
        if self._server is None:
            return
        addr = self._server.local_addr()
        self._server.shutdown()
        self._server.server_close()
        self._thread.join()
        self._server = None
        for fn in self._stop_callbacks:
            fn()
        LOG.info(f"JSON-RPC server on {addr} stopped")


class HttpServerBuilder:
    def build(self, address: str = "127.0.0.1:0") -> HttpServer:
        """
        Bind a server to ``host:port``. Port 0 lets the OS pick a free port.
        """
        host, port = swarmnet.interfaces.split_netloc(address)
        try:
            return HttpServer((host, port))
        except OSError as e:
            raise BindError(f"Could not bind JSON-RPC server to {address}: {e}") from e
