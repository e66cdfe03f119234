# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
import asyncio
from typing import Optional

from loguru import logger as LOG

import swarmnet.config
import swarmnet.crypto
import swarmnet.gateway
import swarmnet.keystore
from swarmnet.errors import GatewayError, SyncError


class WalletContext:
    """
    Client-side view of a test network: the wallet configuration, its
    keystore, and a gateway of whichever kind the configuration references.

    :param str config_path: path to the persisted client configuration.
    """

    def __init__(self, config_path: str):
        self.config_path = config_path
        self.config = swarmnet.config.read(config_path, swarmnet.config.ClientConfig)
        self.keystore = swarmnet.keystore.KeyStore.load(self.config.keystore)
        self.gateway = swarmnet.gateway.create_gateway(self.config.gateway)
        LOG.debug(
            f"Wallet loaded from {config_path}: {len(self.config.accounts)} accounts, {self.config.gateway.kind} gateway"
        )

    @property
    def active_address(self) -> Optional[str]:
        if self.config.active_address is not None:
            return self.config.active_address
        return self.config.accounts[0] if self.config.accounts else None

    async def sync_client_state(self, address: Optional[str] = None):
        """
        Pull the objects owned by ``address`` (default: the active address)
        into the gateway's local storage. Not retried on failure.
        """
        address = address or self.active_address
        if address is None:
            raise SyncError("No address to sync: wallet has no accounts")
        LOG.info(f"Syncing client state for {address}")
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None, self.gateway.sync_account_state, address
            )
        except (GatewayError, TimeoutError) as e:
            raise SyncError(f"Failed to sync {address}: {e}") from e

    def sign_and_execute(self, address: str, tx_bytes: str) -> dict:
        key = self.keystore.key(address)
        signature = key.sign(swarmnet.crypto.b64decode(tx_bytes))
        return self.gateway.execute_transaction(
            tx_bytes, swarmnet.crypto.b64encode(signature), key.public_key_b64()
        )

    def close(self):
        self.gateway.close()
