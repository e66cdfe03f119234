# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

import asyncio
import http
import http.server
import json
import threading
import time
import urllib.parse
from enum import Enum
from typing import Callable, List, Optional

import httpx
from loguru import logger as LOG

import swarmnet.config
import swarmnet.crypto
import swarmnet.store

DEFAULT_NODE_HOST = "127.0.0.1"
NODE_STARTUP_TIMEOUT_S = 10
NODE_REQUEST_TIMEOUT_S = 5


class NodeRole(Enum):
    VALIDATOR = "Validator"
    FULLNODE = "Fullnode"


class State(Enum):
    UNINITIALIZED = "Uninitialized"
    READY = "Ready"
    STOPPED = "Stopped"


class NodeRequestHandler(http.server.BaseHTTPRequestHandler):
    def __init__(self, request, client_address, server):
        self.node = server.node
        super(NodeRequestHandler, self).__init__(request, client_address, server)

    def _reply(self, status, body):
        data = json.dumps(body).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def _not_found(self, what):
        self._reply(http.HTTPStatus.NOT_FOUND, {"error": f"{what} not found"})

    def do_GET(self):
        url = urllib.parse.urlparse(self.path)
        parts = [p for p in url.path.split("/") if p]
        query = urllib.parse.parse_qs(url.query)

        if parts == ["node", "state"]:
            self._reply(http.HTTPStatus.OK, self.node.describe())
            return

        self.node.catch_up()
        store = self.node.store
        if len(parts) == 2 and parts[0] == "objects":
            obj = store.get_object(parts[1])
            if obj is None:
                self._not_found(f"Object {parts[1]}")
            else:
                self._reply(http.HTTPStatus.OK, obj)
        elif len(parts) == 3 and parts[0] == "owners" and parts[2] == "objects":
            self._reply(http.HTTPStatus.OK, store.objects_owned_by(parts[1]))
        elif parts == ["transactions"]:
            try:
                start = int(query.get("start", ["1"])[0])
                end = int(query["end"][0]) if "end" in query else None
            except ValueError:
                self._reply(http.HTTPStatus.BAD_REQUEST, {"error": "Invalid range"})
                return
            self._reply(http.HTTPStatus.OK, store.transactions_in_range(start, end))
        elif len(parts) == 2 and parts[0] == "transactions":
            entry = store.get_transaction(parts[1])
            if entry is None:
                self._not_found(f"Transaction {parts[1]}")
            else:
                self._reply(http.HTTPStatus.OK, entry)
        else:
            self._not_found(self.path)

    def do_POST(self):
        if self.path != "/transactions":
            self._not_found(self.path)
            return
        if self.node.role != NodeRole.VALIDATOR:
            self._reply(
                http.HTTPStatus.FORBIDDEN,
                {"error": f"{self.node.name} does not accept transactions"},
            )
            return
        content_length = int(self.headers.get("Content-Length", 0))
        try:
            body = json.loads(self.rfile.read(content_length))
            effects = self.node.submit(
                swarmnet.crypto.b64decode(body["tx_bytes"]),
                swarmnet.crypto.b64decode(body["signature"]),
                swarmnet.crypto.b64decode(body["public_key"]),
            )
        except (ValueError, KeyError, TypeError) as e:
            self._reply(http.HTTPStatus.BAD_REQUEST, {"error": f"Malformed request: {e}"})
            return
        except swarmnet.store.TransactionError as e:
            self._reply(http.HTTPStatus.BAD_REQUEST, {"error": str(e)})
            return
        self._reply(http.HTTPStatus.OK, effects)

    def log_message(self, format, *args):
        LOG.trace(f"{self.node.name}: {format % args}")


class NodeServer(http.server.ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, server_address, node):
        self.node = node
        super(NodeServer, self).__init__(server_address, NodeRequestHandler)


class Node:
    """
    One member of a swarm. Validators hold and mutate ledger state; fullnodes
    mirror it from an upstream validator.

    :param int local_node_id: index of the node in its swarm
    :param NodeRole role: validator or fullnode
    :param KeyPair key: node identity
    :param str storage_dir: directory owned by this node
    :param list genesis_objects: initial ledger objects
    :param upstream: for fullnodes, callable returning the address of the validator to follow
    """

    def __init__(
        self,
        local_node_id: int,
        role: NodeRole,
        key: swarmnet.crypto.KeyPair,
        storage_dir: str,
        genesis_objects: List[dict],
        host: str = DEFAULT_NODE_HOST,
        upstream: Optional[Callable[[], str]] = None,
    ):
        self.local_node_id = local_node_id
        self.role = role
        self.key = key
        self.storage_dir = storage_dir
        self.genesis_objects = genesis_objects
        self.host = host
        self.port = None
        self.upstream = upstream
        self.state = State.UNINITIALIZED
        self.store = None
        self.server = None
        self.thread = None
        self._catch_up_lock = threading.Lock()

    @property
    def name(self):
        prefix = "validator" if self.role == NodeRole.VALIDATOR else "fullnode"
        return f"{prefix}-{self.local_node_id}"

    def __repr__(self):
        return f"<{self.name} {self.state.value} {self.get_rpc_address()}>"

    def get_rpc_address(self):
        return f"{self.host}:{self.port}" if self.port else None

    def validator_info(self) -> swarmnet.config.ValidatorInfo:
        return swarmnet.config.ValidatorInfo(
            name=self.name,
            public_key=self.key.public_key_b64(),
            network_address=self.get_rpc_address(),
        )

    def describe(self):
        return {
            "name": self.name,
            "role": self.role.value,
            "state": self.state.value,
            "public_key": self.key.public_key_b64(),
            "seqno": self.store.transaction_count() if self.store else 0,
        }

    def start(self):
        """
        Load genesis state and start serving on an OS-assigned port. Blocking.
        """
        assert self.state == State.UNINITIALIZED, f"{self.name} already started"
        self.store = swarmnet.store.ObjectStore(self.storage_dir, self.genesis_objects)
        self.server = NodeServer((self.host, 0), self)
        self.port = self.server.server_address[1]
        self.thread = threading.Thread(
            target=self.server.serve_forever, name=self.name, daemon=True
        )
        self.thread.start()
        self.state = State.READY
        LOG.info(f"Started {self.name} on {self.get_rpc_address()}")

    async def launch(self, timeout=NODE_STARTUP_TIMEOUT_S):
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.start)
        await self.wait_for_ready(timeout)

    async def wait_for_ready(self, timeout=NODE_STARTUP_TIMEOUT_S):
        end_time = time.time() + timeout
        async with httpx.AsyncClient(trust_env=False) as client:
            while True:
                try:
                    r = await client.get(
                        f"http://{self.get_rpc_address()}/node/state",
                        timeout=NODE_REQUEST_TIMEOUT_S,
                    )
                    if (
                        r.status_code == http.HTTPStatus.OK
                        and r.json()["state"] == State.READY.value
                    ):
                        LOG.debug(f"{self.name} is ready")
                        return
                except httpx.TransportError:
                    pass
                if time.time() > end_time:
                    raise TimeoutError(f"{self.name} not ready after {timeout}s")
                await asyncio.sleep(0.1)

    def submit(self, tx_bytes: bytes, signature: bytes, public_key: bytes) -> dict:
        data = swarmnet.store.decode_transaction(tx_bytes)
        if not swarmnet.crypto.verify_signature(signature, tx_bytes, public_key):
            raise swarmnet.store.TransactionError("Invalid transaction signature")
        if swarmnet.crypto.address_from_public_key(public_key) != data["sender"]:
            raise swarmnet.store.TransactionError(
                f"Signer does not match sender {data['sender']}"
            )
        return self.store.apply(tx_bytes)

    def catch_up(self):
        """
        Fullnodes replay the upstream validator's log before serving reads.
        """
        if self.role != NodeRole.FULLNODE or self.upstream is None:
            return
        with self._catch_up_lock:
            start = self.store.transaction_count() + 1
            try:
                r = httpx.get(
                    f"http://{self.upstream()}/transactions",
                    params={"start": start},
                    timeout=NODE_REQUEST_TIMEOUT_S,
                    trust_env=False,
                )
                r.raise_for_status()
            except httpx.HTTPError as e:
                LOG.warning(f"{self.name} could not catch up from upstream: {e}")
                return
            for entry in r.json():
                self.store.apply(swarmnet.crypto.b64decode(entry["tx_bytes"]))

    def stop(self):
        if self.server is not None:
            self.server.shutdown()
            self.server.server_close()
            self.thread.join()
            self.server = None
            LOG.info(f"Stopped {self.name}")
        self.state = State.STOPPED
