# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
import os
import asyncio
import shutil
import tempfile
from dataclasses import dataclass, field
from typing import List

from loguru import logger as LOG

import swarmnet.config
import swarmnet.crypto
import swarmnet.genesis
import swarmnet.node
from swarmnet.errors import ConfigError, LaunchError

# Number of validators in a swarm unless the builder is told otherwise
DEFAULT_COMMITTEE_SIZE = 4


@dataclass
class SwarmConfig(swarmnet.config.NetworkConfig):
    #: Keys of the funded genesis accounts. Not part of the persisted network config.
    account_keys: List[swarmnet.crypto.KeyPair] = field(default_factory=list)


class SwarmBuilder:
    def __init__(self):
        self._committee_size = DEFAULT_COMMITTEE_SIZE
        self._fullnode_count = 0
        self._genesis_config = None
        self._dir = None
        self._host = swarmnet.node.DEFAULT_NODE_HOST
        self._startup_timeout = swarmnet.node.NODE_STARTUP_TIMEOUT_S

    def committee_size(self, committee_size: int) -> "SwarmBuilder":
        self._committee_size = committee_size
        return self

    def with_fullnode_count(self, fullnode_count: int) -> "SwarmBuilder":
        self._fullnode_count = fullnode_count
        return self

    def initial_accounts_config(
        self, genesis_config: swarmnet.genesis.GenesisConfig
    ) -> "SwarmBuilder":
        self._genesis_config = genesis_config
        return self

    def dir(self, path: str) -> "SwarmBuilder":
        self._dir = path
        return self

    def host(self, host: str) -> "SwarmBuilder":
        self._host = host
        return self

    def startup_timeout(self, timeout: float) -> "SwarmBuilder":
        self._startup_timeout = timeout
        return self

    def build(self) -> "Swarm":
        if self._committee_size < 1:
            raise LaunchError(
                f"Committee size must be at least 1, got {self._committee_size}"
            )
        if self._fullnode_count < 0:
            raise LaunchError(
                f"Fullnode count must not be negative, got {self._fullnode_count}"
            )

        try:
            genesis_state = swarmnet.genesis.generate_genesis_state(
                self._genesis_config
            )
        except ValueError as e:
            raise ConfigError(f"Invalid genesis configuration: {e}") from e

        if self._dir is None:
            working_dir = tempfile.mkdtemp(prefix="swarm_")
        else:
            working_dir = os.path.abspath(self._dir)
            os.makedirs(working_dir, exist_ok=True)

        seed = self._genesis_config.key_seed if self._genesis_config else None
        validator_keys = swarmnet.genesis.KeyFactory("validator", seed)
        fullnode_keys = swarmnet.genesis.KeyFactory("fullnode", seed)

        validators = []
        for i in range(self._committee_size):
            node = swarmnet.node.Node(
                i,
                swarmnet.node.NodeRole.VALIDATOR,
                validator_keys.next(),
                os.path.join(working_dir, f"validator-{i}"),
                genesis_state.objects,
                host=self._host,
            )
            validators.append(node)

        # Fullnodes follow the first validator
        def upstream():
            return validators[0].get_rpc_address()

        fullnodes = []
        for i in range(self._fullnode_count):
            local_node_id = self._committee_size + i
            node = swarmnet.node.Node(
                local_node_id,
                swarmnet.node.NodeRole.FULLNODE,
                fullnode_keys.next(),
                os.path.join(working_dir, f"fullnode-{local_node_id}"),
                genesis_state.objects,
                host=self._host,
                upstream=upstream,
            )
            fullnodes.append(node)

        return Swarm(
            working_dir,
            genesis_state,
            validators,
            fullnodes,
            startup_timeout=self._startup_timeout,
        )


class Swarm:
    """
    A set of in-process nodes forming one test network, rooted in a working
    directory that it exclusively owns.
    """

    def __init__(
        self,
        working_dir: str,
        genesis_state: swarmnet.genesis.GenesisState,
        validators: List[swarmnet.node.Node],
        fullnodes: List[swarmnet.node.Node],
        startup_timeout: float = swarmnet.node.NODE_STARTUP_TIMEOUT_S,
    ):
        self._dir = working_dir
        self.genesis_state = genesis_state
        self._validators = validators
        self._fullnodes = fullnodes
        self.startup_timeout = startup_timeout
        self.launched = False

    @staticmethod
    def builder() -> SwarmBuilder:
        return SwarmBuilder()

    @property
    def nodes(self) -> List[swarmnet.node.Node]:
        return self._validators + self._fullnodes

    def dir(self) -> str:
        return self._dir

    def validators(self) -> List[swarmnet.node.Node]:
        return list(self._validators)

    def fullnodes(self) -> List[swarmnet.node.Node]:
        return list(self._fullnodes)

    def config(self) -> SwarmConfig:
        return SwarmConfig(
            committee_size=len(self._validators),
            validators=[node.validator_info() for node in self._validators],
            fullnodes=[node.get_rpc_address() for node in self._fullnodes],
            accounts=self.genesis_state.accounts,
            genesis_objects=self.genesis_state.objects,
            account_keys=self.genesis_state.account_keys,
        )

    async def launch(self):
        """
        Start every node concurrently and wait until all of them report ready.
        If any node fails, every node is stopped and :py:exc:`LaunchError` is raised.
        """
        if self.launched:
            raise LaunchError("Swarm has already been launched")
        LOG.info(
            f"Launching {len(self._validators)} validators and {len(self._fullnodes)} fullnodes in {self._dir}"
        )
        try:
            results = await asyncio.gather(
                *(node.launch(self.startup_timeout) for node in self.nodes),
                return_exceptions=True,
            )
        except BaseException:
            self.stop()
            raise

        failures = [
            (node, result)
            for node, result in zip(self.nodes, results)
            if isinstance(result, BaseException)
        ]
        if failures:
            for node, error in failures:
                LOG.error(f"Failed to start {node.name}: {error!r}")
            self.stop()
            node, error = failures[0]
            raise LaunchError(
                f"{len(failures)} node(s) failed to start, first was {node.name}: {error}"
            ) from error

        self.launched = True
        LOG.success(f"All {len(self.nodes)} nodes started")

    def stop(self, remove_dir: bool = False):
        for node in self.nodes:
            try:
                node.stop()
            except Exception:
                LOG.exception(f"Failed to stop {node.name}")
        self.launched = False
        if remove_dir:
            LOG.debug(f"Removing {self._dir}")
            shutil.rmtree(self._dir, ignore_errors=True)

    async def __aenter__(self):
        if not self.launched:
            await self.launch()
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        self.stop()
