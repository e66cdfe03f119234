# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

import json
from unittest import mock

import httpx
import pytest

import swarmnet.clients
import swarmnet.rpc_api
from swarmnet.errors import BindError, GatewayError, InvalidArgumentError, RpcError
from swarmnet.jsonrpc import ErrorCode, HttpServerBuilder, RpcModule


def fail():
    raise GatewayError("nope")


def reject():
    raise InvalidArgumentError("Invalid count: -1")


def broken():
    return None + 1


def make_module():
    module = RpcModule()
    module.register_method("add", lambda a, b: a + b)
    module.register_method("fail", fail)
    module.register_method("reject", reject)
    module.register_method("broken", broken)
    return module


def call(module, request):
    response = module.handle(json.dumps(request).encode())
    return json.loads(response) if response is not None else None


def test_positional_and_named_params():
    module = make_module()
    r = call(module, {"jsonrpc": "2.0", "id": 1, "method": "add", "params": [1, 2]})
    assert r == {"jsonrpc": "2.0", "id": 1, "result": 3}
    r = call(module, {"jsonrpc": "2.0", "id": 2, "method": "add", "params": {"a": 1, "b": 4}})
    assert r["result"] == 5


@pytest.mark.parametrize(
    "request_, code",
    [
        ({"jsonrpc": "2.0", "id": 1, "method": "missing"}, ErrorCode.METHOD_NOT_FOUND),
        ({"jsonrpc": "2.0", "id": 1, "method": "add", "params": [1]}, ErrorCode.INVALID_PARAMS),
        ({"jsonrpc": "2.0", "id": 1, "method": "add", "params": 3}, ErrorCode.INVALID_PARAMS),
        ({"jsonrpc": "1.0", "id": 1, "method": "add"}, ErrorCode.INVALID_REQUEST),
        ({"jsonrpc": "2.0", "id": 1, "method": "fail"}, ErrorCode.SERVER_ERROR),
        ({"jsonrpc": "2.0", "id": 1, "method": "reject"}, ErrorCode.INVALID_PARAMS),
        ({"jsonrpc": "2.0", "id": 1, "method": "broken"}, ErrorCode.INTERNAL_ERROR),
    ],
)
def test_error_codes(request_, code):
    r = call(make_module(), request_)
    assert r["error"]["code"] == code


def test_parse_error():
    r = json.loads(make_module().handle(b"{"))
    assert r["error"]["code"] == ErrorCode.PARSE_ERROR


def test_batch_and_notification():
    module = make_module()
    r = call(
        module,
        [
            {"jsonrpc": "2.0", "id": 1, "method": "add", "params": [1, 1]},
            {"jsonrpc": "2.0", "method": "add", "params": [2, 2]},
            {"jsonrpc": "2.0", "id": 3, "method": "add", "params": [3, 3]},
        ],
    )
    assert [(e["id"], e["result"]) for e in r] == [(1, 2), (3, 6)]
    assert call(module, {"jsonrpc": "2.0", "method": "add", "params": [1, 1]}) is None


def test_merge_rejects_duplicate_methods():
    module = make_module()
    with pytest.raises(ValueError):
        module.merge(make_module())
    other = RpcModule()
    other.register_method("sub", lambda a, b: a - b)
    module.merge(other)
    assert module.method_names() == ["add", "broken", "fail", "reject", "sub"]


def test_server_and_client():
    server = HttpServerBuilder().build("127.0.0.1:0")
    handle = server.start(make_module())
    stopped = []
    handle.add_stop_callback(lambda: stopped.append(True))
    url = server.local_addr().url()
    client = swarmnet.clients.JsonRpcClient(url)
    try:
        assert client.request("add", [20, 22]) == 42
        with pytest.raises(RpcError) as e:
            client.request("fail")
        assert e.value.code == ErrorCode.SERVER_ERROR
        assert e.value.message == "nope"
    finally:
        client.close()
        handle.stop()
    assert not handle.is_running
    assert stopped == [True]
    handle.stop()
    assert stopped == [True]


def test_port_is_released_on_stop():
    server = HttpServerBuilder().build("127.0.0.1:0")
    handle = server.start(make_module())
    addr = server.local_addr()
    handle.stop()
    with pytest.raises(httpx.TransportError):
        httpx.post(addr.url(), json={}, trust_env=False, timeout=1)


def test_client_cannot_connect():
    server = HttpServerBuilder().build("127.0.0.1:0")
    url = server.local_addr().url()
    server.server_close()
    client = swarmnet.clients.JsonRpcClient(url, timeout=1)
    try:
        with pytest.raises(swarmnet.clients.RpcConnectionException):
            client.request("add", [1, 2])
    finally:
        client.close()


def test_bind_error():
    # Documentation-only address, never assigned to a local interface
    with pytest.raises(BindError):
        HttpServerBuilder().build("192.0.2.1:0")


@pytest.mark.parametrize("url", ["not a url", "ftp://127.0.0.1:1", "http://"])
def test_invalid_client_url(url):
    with pytest.raises(ValueError):
        swarmnet.clients.JsonRpcClient(url)


def test_gateway_apis_merge_into_one_module():
    module = RpcModule()
    for api in (
        swarmnet.rpc_api.RpcGatewayImpl,
        swarmnet.rpc_api.GatewayReadApiImpl,
        swarmnet.rpc_api.TransactionBuilderImpl,
        swarmnet.rpc_api.GatewayWalletSyncApiImpl,
    ):
        module.merge(api(mock.Mock()).into_rpc())
    assert len(module.method_names()) == 11
    assert all(
        name.startswith(swarmnet.rpc_api.METHOD_PREFIX) for name in module.method_names()
    )


def test_gateway_api_must_define_methods():
    with pytest.raises(TypeError):
        swarmnet.rpc_api._GatewayApi(None)
