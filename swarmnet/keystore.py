# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
from typing import Dict, List, Optional

from loguru import logger as LOG

import swarmnet.config
import swarmnet.crypto
from swarmnet.errors import ConfigError, GatewayError


class KeyStore:
    """
    Mapping from account address to signing keypair, persisted as a JSON
    array of base64-encoded raw private keys.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._keys: Dict[str, swarmnet.crypto.KeyPair] = {}

    def add_key(self, address: str, key: swarmnet.crypto.KeyPair):
        if key.address != address:
            raise ValueError(f"Key for {key.address} cannot be stored as {address}")
        self._keys[address] = key

    def set_path(self, path: str):
        self.path = path

    def addresses(self) -> List[str]:
        return list(self._keys)

    def key(self, address: str) -> swarmnet.crypto.KeyPair:
        try:
            return self._keys[address]
        except KeyError:
            raise GatewayError(f"No key for address {address} in keystore") from None

    def sign(self, address: str, data: bytes) -> bytes:
        return self.key(address).sign(data)

    def __len__(self):
        return len(self._keys)

    def __contains__(self, address):
        return address in self._keys

    def save(self):
        if self.path is None:
            raise ValueError("Keystore path is not set")
        LOG.debug(f"Saving {len(self._keys)} keys to {self.path}")
        swarmnet.config.save_json(
            self.path,
            [
                swarmnet.crypto.b64encode(key.private_bytes())
                for key in self._keys.values()
            ],
        )

    @staticmethod
    def load(path: str) -> "KeyStore":
        entries = swarmnet.config.read_json(path)
        if not isinstance(entries, list):
            raise ConfigError(f"Keystore {path} must contain a list of keys")
        keystore = KeyStore(path)
        for entry in entries:
            try:
                key = swarmnet.crypto.KeyPair.from_private_bytes(
                    swarmnet.crypto.b64decode(entry)
                )
            except (ValueError, AttributeError) as e:
                raise ConfigError(f"Malformed key in keystore {path}: {e}") from e
            keystore.add_key(key.address, key)
        return keystore
