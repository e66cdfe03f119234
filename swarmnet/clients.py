# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
import itertools
import re
from typing import Any, Optional, Union

import httpx
from loguru import logger as LOG  # type: ignore

from swarmnet.errors import GatewayError, RpcError
from swarmnet.jsonrpc import JSONRPC_VERSION

DEFAULT_REQUEST_TIMEOUT_SEC = 10

Params = Optional[Union[list, dict]]

loguru_tag_regex = re.compile(r"\\?</?((?:[fb]g\s)?[^<>\s]*)>")


def escape_loguru_tags(s):
    return loguru_tag_regex.sub(lambda match: f"\\{match[0]}", s)


def truncate(string: str, max_len: int = 256):
    if len(string) > max_len:
        return f"{string[: max_len]} + {len(string) - max_len} chars"
    else:
        return string


class RpcConnectionException(GatewayError):
    """
    Exception raised if a JSON-RPC client cannot establish a connection with
    its server.
    """


class RpcIOException(GatewayError):
    """
    Exception raised if a JSON-RPC client experiences a fatal error when
    reading from or writing to an established connection.
    """


def validate_url(url: str) -> str:
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError) as e:
        raise ValueError(f"Invalid JSON-RPC url {url!r}: {e}") from e
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise ValueError(f"Invalid JSON-RPC url {url!r}")
    return url


class _JsonRpcProtocol:
    def __init__(self, url: str):
        self.url = validate_url(url)
        self._ids = itertools.count(1)

    def _request(self, method: str, params: Params) -> dict:
        request = {"jsonrpc": JSONRPC_VERSION, "id": next(self._ids), "method": method}
        if params is not None:
            request["params"] = params
        LOG.opt(colors=True).debug(
            f"<cyan>{method}</> <green>{self.url}</> {escape_loguru_tags(truncate(str(params)))}"
        )
        return request

    @staticmethod
    def _result(request: dict, response: httpx.Response) -> Any:
        if response.status_code != 200:
            raise RpcIOException(
                f"Unexpected HTTP status {response.status_code} from JSON-RPC server"
            )
        try:
            body = response.json()
        except ValueError as e:
            raise RpcIOException(f"Malformed JSON-RPC response: {e}") from e
        if not isinstance(body, dict) or body.get("id") != request["id"]:
            raise RpcIOException(f"Unexpected JSON-RPC response: {body}")
        if "error" in body:
            error = body["error"]
            raise RpcError(error.get("code"), error.get("message"), error.get("data"))
        return body.get("result")

    def _transport_error(self, exc: Exception) -> Exception:
        if isinstance(exc, httpx.TimeoutException):
            return TimeoutError(f"Request to {self.url} timed out")
        if isinstance(exc, httpx.ConnectError):
            return RpcConnectionException(f"Could not connect to {self.url}: {exc}")
        return RpcIOException(f"Request to {self.url} failed: {exc}")


class JsonRpcClient(_JsonRpcProtocol):
    """
    Blocking JSON-RPC 2.0 client over HTTP.
    """

    def __init__(self, url: str, timeout: float = DEFAULT_REQUEST_TIMEOUT_SEC):
        super().__init__(url)
        self.session = httpx.Client(timeout=timeout, trust_env=False)

    def request(self, method: str, params: Params = None) -> Any:
        request = self._request(method, params)
        try:
            response = self.session.post(self.url, json=request)
        except httpx.TransportError as exc:
            raise self._transport_error(exc) from exc
        return self._result(request, response)

    def close(self):
        self.session.close()


class HttpClient(_JsonRpcProtocol):
    """
    Asynchronous JSON-RPC 2.0 client over HTTP, for issuing raw method calls
    against a test network's RPC front-end.
    """

    def __init__(self, url: str, timeout: float = DEFAULT_REQUEST_TIMEOUT_SEC):
        super().__init__(url)
        self.session = httpx.AsyncClient(timeout=timeout, trust_env=False)

    async def request(self, method: str, params: Params = None) -> Any:
        request = self._request(method, params)
        try:
            response = await self.session.post(self.url, json=request)
        except httpx.TransportError as exc:
            raise self._transport_error(exc) from exc
        return self._result(request, response)

    async def close(self):
        await self.session.aclose()
