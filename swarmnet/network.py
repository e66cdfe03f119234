# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
import os
import asyncio
from contextlib import asynccontextmanager
from typing import List, Optional, Tuple

from loguru import logger as LOG

import swarmnet.config
import swarmnet.gateway
import swarmnet.jsonrpc
import swarmnet.keystore
import swarmnet.rpc_api
from swarmnet.clients import HttpClient
from swarmnet.config import (
    SWARM_CLIENT_CONFIG,
    SWARM_GATEWAY_CONFIG,
    SWARM_KEYSTORE_FILENAME,
    SWARM_NETWORK_CONFIG,
    CLIENT_DB_FOLDER,
)
from swarmnet.errors import BindError, PersistError, SwarmNetError, SyncError
from swarmnet.genesis import GenesisConfig
from swarmnet.interfaces import SocketAddress
from swarmnet.swarm import DEFAULT_COMMITTEE_SIZE, Swarm
from swarmnet.wallet import WalletContext

RPC_BIND_ADDRESS = "127.0.0.1:0"


async def _blocking(fn, *args):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, fn, *args)


def persist_network_config(swarm: Swarm) -> swarmnet.config.ClientConfig:
    """
    Write network config, keystore, gateway config and wallet config (in that
    order) into the swarm's working directory. Each file is replaced atomically.
    """
    working_dir = swarm.dir()
    config = swarm.config()

    network_path = os.path.join(working_dir, SWARM_NETWORK_CONFIG)
    wallet_path = os.path.join(working_dir, SWARM_CLIENT_CONFIG)
    keystore_path = os.path.join(working_dir, SWARM_KEYSTORE_FILENAME)
    db_folder_path = os.path.join(working_dir, CLIENT_DB_FOLDER)
    gateway_path = os.path.join(working_dir, SWARM_GATEWAY_CONFIG)

    swarmnet.config.save(config, network_path)

    keystore = swarmnet.keystore.KeyStore()
    for key in config.account_keys:
        keystore.add_key(key.address, key.copy())
    keystore.set_path(keystore_path)
    keystore.save()

    accounts = [key.address for key in config.account_keys]
    validators = config.validator_set()
    active_address = accounts[0] if accounts else None

    try:
        os.makedirs(db_folder_path, exist_ok=True)
    except OSError as e:
        raise PersistError(f"Could not create {db_folder_path}: {e}") from e

    swarmnet.config.save(
        swarmnet.config.GatewayConfig(
            db_folder_path=db_folder_path, validator_set=list(validators)
        ),
        gateway_path,
    )

    # The wallet starts on an embedded gateway over the same validator set
    client_config = swarmnet.config.ClientConfig(
        accounts=accounts,
        keystore=keystore_path,
        gateway=swarmnet.config.EmbeddedGatewayType(
            swarmnet.config.GatewayConfig(
                db_folder_path=db_folder_path, validator_set=list(validators)
            )
        ),
        active_address=active_address,
    )
    swarmnet.config.save(client_config, wallet_path)
    LOG.info(f"Network configuration written to {working_dir}")
    return client_config


async def start_test_network(
    genesis_config: Optional[GenesisConfig] = None,
    committee_size: int = DEFAULT_COMMITTEE_SIZE,
    working_dir: Optional[str] = None,
) -> Swarm:
    return await start_test_network_with_fullnodes(
        genesis_config, 0, committee_size=committee_size, working_dir=working_dir
    )


async def start_test_network_with_fullnodes(
    genesis_config: Optional[GenesisConfig],
    fullnode_count: int,
    committee_size: int = DEFAULT_COMMITTEE_SIZE,
    working_dir: Optional[str] = None,
) -> Swarm:
    """
    Build and launch a swarm, then persist its configuration artifacts.

    :param genesis_config: initial accounts (default genesis when ``None``).
    :param fullnode_count: number of non-validating nodes.
    :param committee_size: number of validators.
    :param working_dir: directory exclusively owned by this network. A fresh
        temporary directory is used when ``None``.
    """
    builder = (
        Swarm.builder()
        .committee_size(committee_size)
        .with_fullnode_count(fullnode_count)
    )
    if genesis_config is not None:
        builder = builder.initial_accounts_config(genesis_config)
    if working_dir is not None:
        builder = builder.dir(working_dir)

    swarm = builder.build()
    await swarm.launch()

    try:
        await _blocking(persist_network_config, swarm)
    except BaseException:
        LOG.error("Failed to persist network configuration, stopping swarm")
        swarm.stop()
        raise
    return swarm


async def setup_network_and_wallet() -> Tuple[Swarm, WalletContext, str]:
    swarm = await start_test_network(None)

    context = None
    try:
        wallet_conf = os.path.join(swarm.dir(), SWARM_CLIENT_CONFIG)
        context = WalletContext(wallet_conf)
        if not context.config.accounts:
            raise SyncError("Wallet has no accounts to sync")
        address = context.config.accounts[0]

        # Sync client to retrieve objects from the network
        await context.sync_client_state(address)
    except BaseException:
        if context is not None:
            context.close()
        swarm.stop()
        raise
    return swarm, context, address


async def start_rpc_gateway(
    config_path: str,
) -> Tuple[SocketAddress, swarmnet.jsonrpc.HttpServerHandle]:
    """
    Serve the gateway control, read, transaction building and wallet sync
    APIs over JSON-RPC, all backed by one embedded gateway built from the
    configuration at ``config_path``.
    """
    server = await _blocking(
        swarmnet.jsonrpc.HttpServerBuilder().build, RPC_BIND_ADDRESS
    )
    addr = server.local_addr()
    client = None
    try:
        client = swarmnet.gateway.create_client(config_path)
        module = swarmnet.jsonrpc.RpcModule()
        module.merge(swarmnet.rpc_api.RpcGatewayImpl(client).into_rpc())
        module.merge(swarmnet.rpc_api.GatewayReadApiImpl(client).into_rpc())
        module.merge(swarmnet.rpc_api.TransactionBuilderImpl(client).into_rpc())
        module.merge(swarmnet.rpc_api.GatewayWalletSyncApiImpl(client).into_rpc())
        handle = server.start(module)
    except BaseException as e:
        server.server_close()
        if client is not None:
            client.close()
        if isinstance(e, SwarmNetError) or not isinstance(e, Exception):
            raise
        raise BindError(f"Could not start JSON-RPC server on {addr}: {e}") from e
    handle.add_stop_callback(client.close)
    return addr, handle


def rewire_to_rpc(working_dir: str, rpc_url: str) -> swarmnet.config.ClientConfig:
    """
    Point the persisted wallet configuration at the RPC gateway at ``rpc_url``.
    Accounts, keystore and active address are kept as they are.
    """
    wallet_conf = swarmnet.config.PersistedConfig.read(
        os.path.join(working_dir, SWARM_CLIENT_CONFIG), swarmnet.config.ClientConfig
    )
    wallet_conf.config.gateway = swarmnet.config.RpcGatewayType(url=rpc_url)
    wallet_conf.save()
    LOG.info(f"Wallet configuration now uses RPC gateway {rpc_url}")
    return wallet_conf.config


def rewire_to_embedded(working_dir: str) -> swarmnet.config.ClientConfig:
    """
    Point the persisted wallet configuration back at an embedded gateway built
    from the persisted gateway configuration.
    """
    gateway_config = swarmnet.config.read(
        os.path.join(working_dir, SWARM_GATEWAY_CONFIG), swarmnet.config.GatewayConfig
    )
    wallet_conf = swarmnet.config.PersistedConfig.read(
        os.path.join(working_dir, SWARM_CLIENT_CONFIG), swarmnet.config.ClientConfig
    )
    wallet_conf.config.gateway = swarmnet.config.EmbeddedGatewayType(gateway_config)
    wallet_conf.save()
    LOG.info("Wallet configuration now uses the embedded gateway")
    return wallet_conf.config


class TestNetwork:
    """
    A running swarm fronted by a JSON-RPC server, with clients ready to use.
    Closing it stops the RPC server first, then the swarm.
    """

    __test__ = False

    def __init__(
        self,
        network: Swarm,
        rpc_server: swarmnet.jsonrpc.HttpServerHandle,
        accounts: List[str],
        http_client: HttpClient,
        gateway_client: swarmnet.gateway.RpcGatewayClient,
        rpc_url: str,
    ):
        self.network = network
        self._rpc_server = rpc_server
        self.accounts = accounts
        self.http_client = http_client
        self.gateway_client = gateway_client
        self.rpc_url = rpc_url

    @property
    def working_dir(self) -> str:
        return self.network.dir()

    async def close(self, remove_dir: bool = False):
        """
        Tear down in order: wallet configuration back to the embedded gateway
        (so it never references a dead RPC server), RPC server, clients, swarm.
        """
        try:
            if self._rpc_server.is_running:
                await _blocking(rewire_to_embedded, self.working_dir)
        finally:
            await _teardown(
                self._rpc_server,
                self.http_client,
                self.gateway_client,
                self.network,
                remove_dir,
            )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        await self.close()


async def _teardown(rpc_server, http_client, gateway_client, swarm, remove_dir=False):
    try:
        if rpc_server is not None:
            rpc_server.stop()
        if gateway_client is not None:
            gateway_client.close()
        if http_client is not None:
            await http_client.close()
    finally:
        swarm.stop(remove_dir=remove_dir)


async def start_rpc_test_network(
    genesis_config: Optional[GenesisConfig] = None,
    committee_size: int = DEFAULT_COMMITTEE_SIZE,
    working_dir: Optional[str] = None,
) -> TestNetwork:
    return await start_rpc_test_network_with_fullnode(
        genesis_config, 0, committee_size=committee_size, working_dir=working_dir
    )


async def start_rpc_test_network_with_fullnode(
    genesis_config: Optional[GenesisConfig],
    fullnode_count: int,
    committee_size: int = DEFAULT_COMMITTEE_SIZE,
    working_dir: Optional[str] = None,
) -> TestNetwork:
    network = await start_test_network_with_fullnodes(
        genesis_config,
        fullnode_count,
        committee_size=committee_size,
        working_dir=working_dir,
    )

    rpc_server_handle = None
    http_client = None
    gateway_client = None
    wallet_conf = None
    try:
        working_dir = network.dir()
        server_addr, rpc_server_handle = await start_rpc_gateway(
            os.path.join(working_dir, SWARM_GATEWAY_CONFIG)
        )
        rpc_url = server_addr.url()
        wallet_conf = await _blocking(rewire_to_rpc, working_dir, rpc_url)

        http_client = HttpClient(rpc_url)
        gateway_client = swarmnet.gateway.RpcGatewayClient(rpc_url)
    except BaseException:
        LOG.exception("Failed to start RPC test network, tearing down")
        try:
            if wallet_conf is not None:
                await _blocking(rewire_to_embedded, working_dir)
        except Exception:
            LOG.exception("Could not restore the embedded gateway configuration")
        finally:
            await _teardown(rpc_server_handle, http_client, gateway_client, network)
        raise

    LOG.success(f"RPC test network ready at {rpc_url}")
    return TestNetwork(
        network=network,
        rpc_server=rpc_server_handle,
        accounts=list(wallet_conf.accounts),
        http_client=http_client,
        gateway_client=gateway_client,
        rpc_url=rpc_url,
    )


@asynccontextmanager
async def rpc_test_network(
    genesis_config: Optional[GenesisConfig] = None,
    fullnode_count: int = 0,
    committee_size: int = DEFAULT_COMMITTEE_SIZE,
    working_dir: Optional[str] = None,
    remove_dir: bool = False,
):
    """
    Context manager for :py:class:`TestNetwork`.
    :param remove_dir: delete the working directory once the network is down.
    """
    net = await start_rpc_test_network_with_fullnode(
        genesis_config,
        fullnode_count,
        committee_size=committee_size,
        working_dir=working_dir,
    )
    try:
        yield net
    finally:
        LOG.info("Stopping network")
        await net.close(remove_dir=remove_dir)
