# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

import asyncio
import http

import httpx
import pytest

import swarmnet.config
import swarmnet.crypto
import swarmnet.gateway
import swarmnet.node
import swarmnet.store
from swarmnet.errors import ConfigError, LaunchError
from swarmnet.genesis import (
    AccountConfig,
    GenesisConfig,
    ObjectConfig,
    default_genesis_config,
)
from swarmnet.node import State
from swarmnet.swarm import Swarm


def test_quorum_threshold():
    assert [swarmnet.gateway.quorum_threshold(n) for n in (1, 2, 3, 4, 7, 10)] == [
        1,
        1,
        1,
        3,
        5,
        7,
    ]


def test_swarm_node_counts(tmp_path):
    async def run():
        swarm = (
            Swarm.builder()
            .committee_size(3)
            .with_fullnode_count(2)
            .dir(str(tmp_path))
            .build()
        )
        async with swarm:
            assert len(swarm.validators()) == 3
            assert len(swarm.fullnodes()) == 2
            assert all(node.state == State.READY for node in swarm.nodes)
            addresses = {node.get_rpc_address() for node in swarm.nodes}
            assert len(addresses) == 5
            config = swarm.config()
            assert config.committee_size == 3
            assert [v.name for v in config.validator_set()] == [
                "validator-0",
                "validator-1",
                "validator-2",
            ]
        assert all(node.state == State.STOPPED for node in swarm.nodes)

    asyncio.run(run())


@pytest.mark.parametrize("committee_size, fullnodes", [(0, 0), (-1, 0), (1, -1)])
def test_invalid_swarm_size(committee_size, fullnodes):
    builder = Swarm.builder().committee_size(committee_size)
    with pytest.raises(LaunchError):
        builder.with_fullnode_count(fullnodes).build()


def test_launch_failure_stops_every_node(tmp_path, monkeypatch):
    start = swarmnet.node.Node.start

    def flaky_start(node):
        if node.local_node_id == 2:
            raise OSError("Address already in use")
        start(node)

    monkeypatch.setattr(swarmnet.node.Node, "start", flaky_start)

    swarm = Swarm.builder().committee_size(4).dir(str(tmp_path)).build()
    with pytest.raises(LaunchError) as e:
        asyncio.run(swarm.launch())
    assert "validator-2" in str(e.value)
    assert isinstance(e.value.__cause__, OSError)
    for node in swarm.nodes:
        assert node.server is None
        assert node.state == State.STOPPED
    for node in swarm.nodes:
        if node.port is not None:
            with pytest.raises(httpx.TransportError):
                httpx.get(
                    f"http://{node.get_rpc_address()}/node/state",
                    timeout=1,
                    trust_env=False,
                )


def test_fullnode_follows_validators(tmp_path):
    genesis = default_genesis_config(num_accounts=2, num_objects=1)

    async def run():
        swarm = (
            Swarm.builder()
            .committee_size(4)
            .with_fullnode_count(1)
            .initial_accounts_config(genesis)
            .dir(str(tmp_path))
            .build()
        )
        async with swarm:
            config = swarm.config()
            sender, recipient = swarm.genesis_state.account_keys
            gateway = swarmnet.gateway.EmbeddedGateway(
                swarmnet.config.GatewayConfig(
                    db_folder_path=str(tmp_path / "client_db"),
                    validator_set=config.validator_set(),
                )
            )
            try:
                object_id = config.genesis_objects[0]["object_id"]
                tx_bytes = gateway.transfer_object(
                    sender.address, object_id, recipient.address
                )["tx_bytes"]
                signature = sender.sign(swarmnet.crypto.b64decode(tx_bytes))
                effects = gateway.execute_transaction(
                    tx_bytes,
                    swarmnet.crypto.b64encode(signature),
                    sender.public_key_b64(),
                )
                assert len(effects["signers"]) >= swarmnet.gateway.quorum_threshold(4)
            finally:
                gateway.close()

            fullnode = swarm.fullnodes()[0]
            async with httpx.AsyncClient(trust_env=False) as client:
                r = await client.get(
                    f"http://{fullnode.get_rpc_address()}/objects/{object_id}"
                )
                assert r.status_code == http.HTTPStatus.OK
                assert r.json()["owner"] == recipient.address

                r = await client.post(
                    f"http://{fullnode.get_rpc_address()}/transactions", json={}
                )
                assert r.status_code == http.HTTPStatus.FORBIDDEN

    asyncio.run(run())


def test_forged_signature_is_rejected(tmp_path):
    genesis = default_genesis_config(num_accounts=2, num_objects=1)

    async def run():
        swarm = (
            Swarm.builder()
            .committee_size(1)
            .initial_accounts_config(genesis)
            .dir(str(tmp_path))
            .build()
        )
        async with swarm:
            owner, thief = swarm.genesis_state.account_keys
            gateway = swarmnet.gateway.EmbeddedGateway(
                swarmnet.config.GatewayConfig(
                    db_folder_path=str(tmp_path / "client_db"),
                    validator_set=swarm.config().validator_set(),
                )
            )
            try:
                object_id = swarm.genesis_state.objects[0]["object_id"]
                tx_bytes = gateway.transfer_object(
                    owner.address, object_id, thief.address
                )["tx_bytes"]
                signature = thief.sign(swarmnet.crypto.b64decode(tx_bytes))
                with pytest.raises(swarmnet.store.TransactionError):
                    gateway.execute_transaction(
                        tx_bytes,
                        swarmnet.crypto.b64encode(signature),
                        thief.public_key_b64(),
                    )
                assert gateway.get_total_transaction_number() == 0
            finally:
                gateway.close()

    asyncio.run(run())


def test_invalid_genesis_creates_no_directory(tmp_path):
    genesis = GenesisConfig(
        accounts=[AccountConfig(gas_objects=[ObjectConfig(gas_value=-1)])]
    )
    working_dir = tmp_path / "net"
    builder = Swarm.builder().initial_accounts_config(genesis).dir(str(working_dir))
    with pytest.raises(ConfigError):
        builder.build()
    assert not working_dir.exists()
