# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
import copy
import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from loguru import logger as LOG

import swarmnet.crypto

DEFAULT_NUMBER_OF_ACCOUNTS = 5
DEFAULT_NUMBER_OF_OBJECTS = 5
DEFAULT_GAS_AMOUNT = 100000


def object_id_for(owner: str, index: int) -> str:
    return "0x" + hashlib.sha3_256(f"{owner}:{index}".encode()).digest()[:20].hex()


@dataclass
class ObjectConfig:
    #: Identifier of the gas object (derived from its owner when unset)
    object_id: Optional[str] = None
    #: Initial balance of the gas object
    gas_value: int = DEFAULT_GAS_AMOUNT

    @staticmethod
    def to_json(oc):
        return {"object_id": oc.object_id, "gas_value": oc.gas_value}

    @staticmethod
    def from_json(json):
        return ObjectConfig(
            object_id=json.get("object_id"),
            gas_value=json.get("gas_value", DEFAULT_GAS_AMOUNT),
        )


@dataclass
class AccountConfig:
    #: Fixed address. Accounts with a fixed address get no keypair.
    address: Optional[str] = None
    gas_objects: List[ObjectConfig] = field(default_factory=list)

    @staticmethod
    def to_json(ac):
        return {
            "address": ac.address,
            "gas_objects": [ObjectConfig.to_json(o) for o in ac.gas_objects],
        }

    @staticmethod
    def from_json(json):
        return AccountConfig(
            address=json.get("address"),
            gas_objects=[ObjectConfig.from_json(o) for o in json.get("gas_objects", [])],
        )


@dataclass
class GenesisConfig:
    accounts: List[AccountConfig] = field(default_factory=list)
    #: When set, every generated key is derived from this seed
    key_seed: Optional[int] = None

    @staticmethod
    def to_json(gc):
        return {
            "accounts": [AccountConfig.to_json(a) for a in gc.accounts],
            "key_seed": gc.key_seed,
        }

    @staticmethod
    def from_json(json):
        return GenesisConfig(
            accounts=[AccountConfig.from_json(a) for a in json.get("accounts", [])],
            key_seed=json.get("key_seed"),
        )


def default_genesis_config(
    num_accounts=DEFAULT_NUMBER_OF_ACCOUNTS,
    num_objects=DEFAULT_NUMBER_OF_OBJECTS,
    gas_value=DEFAULT_GAS_AMOUNT,
) -> GenesisConfig:
    return GenesisConfig(
        accounts=[
            AccountConfig(
                gas_objects=[ObjectConfig(gas_value=gas_value) for _ in range(num_objects)]
            )
            for _ in range(num_accounts)
        ]
    )


@dataclass
class GenesisState:
    account_keys: List[swarmnet.crypto.KeyPair]
    objects: List[Dict[str, Any]]

    @property
    def accounts(self) -> List[str]:
        return [key.address for key in self.account_keys]


class KeyFactory:
    """
    Hands out keypairs for one family of identities (accounts, validators...),
    deterministically when a seed is given.
    """

    def __init__(self, label: str, seed: Optional[int] = None):
        self.label = label
        self.seed = seed
        self.count = 0

    def next(self) -> swarmnet.crypto.KeyPair:
        raw = None
        if self.seed is not None:
            raw = swarmnet.crypto.derive_seed(self.seed, self.label, self.count)
        self.count += 1
        return swarmnet.crypto.KeyPair.generate(raw)


def generate_genesis_state(genesis_config: Optional[GenesisConfig] = None) -> GenesisState:
    """
    Derive the funded accounts, their keypairs and the initial gas objects.

    :param genesis_config: initial accounts and balances. A default
        configuration is used when ``None``. The argument is not modified.
    """
    config = copy.deepcopy(genesis_config or default_genesis_config())
    keys = KeyFactory("account", config.key_seed)

    account_keys = []
    objects = []
    seen = set()
    for account in config.accounts:
        if account.address is None:
            key = keys.next()
            account_keys.append(key)
            address = key.address
        else:
            address = account.address.lower()
        if address in seen:
            raise ValueError(f"Duplicate genesis account {address}")
        seen.add(address)

        for i, gas in enumerate(account.gas_objects):
            if gas.gas_value < 0:
                raise ValueError(f"Negative gas value for {address}: {gas.gas_value}")
            objects.append(
                {
                    "object_id": gas.object_id or object_id_for(address, i),
                    "version": 0,
                    "owner": address,
                    "balance": gas.gas_value,
                }
            )

    ids = [o["object_id"] for o in objects]
    if len(set(ids)) != len(ids):
        raise ValueError("Duplicate genesis object ids")

    LOG.debug(
        f"Genesis: {len(config.accounts)} accounts ({len(account_keys)} with keys), {len(objects)} objects"
    )
    return GenesisState(account_keys=account_keys, objects=objects)
