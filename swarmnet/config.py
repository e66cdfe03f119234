# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
import os
import json
import tempfile
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from loguru import logger as LOG

from swarmnet.errors import ConfigError, PersistError

SWARM_NETWORK_CONFIG = "network.json"
SWARM_CLIENT_CONFIG = "client.json"
SWARM_GATEWAY_CONFIG = "gateway.json"
SWARM_KEYSTORE_FILENAME = "wallet.keystore"
CLIENT_DB_FOLDER = "client_db"

DEFAULT_SEND_TIMEOUT_S = 10


def atomic_write(path, contents: str):
    """
    Replace the file at ``path`` with ``contents`` so that concurrent readers
    only ever see the old or the new file, never a partial one.
    """
    directory = os.path.dirname(os.path.abspath(path))
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(
            "w",
            dir=directory,
            prefix=f".{os.path.basename(path)}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        ) as tmp:
            tmp_path = tmp.name
            tmp.write(contents)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_path, path)
    except OSError as e:
        if tmp_path is not None and os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise PersistError(f"Could not write {path}: {e}") from e
    LOG.debug(f'echo "<{len(contents)} bytes>" > {path}')


def save_json(path, obj):
    atomic_write(path, json.dumps(obj, indent=2, sort_keys=True))


def read_json(path):
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Could not read {path}: {e}") from e


@dataclass
class ValidatorInfo:
    name: str
    public_key: str
    network_address: str

    @staticmethod
    def to_json(vi):
        return {
            "name": vi.name,
            "public_key": vi.public_key,
            "network_address": vi.network_address,
        }

    @staticmethod
    def from_json(json):
        return ValidatorInfo(
            name=json["name"],
            public_key=json["public_key"],
            network_address=json["network_address"],
        )


@dataclass
class GatewayConfig:
    db_folder_path: str
    validator_set: List[ValidatorInfo] = field(default_factory=list)
    send_timeout_s: float = DEFAULT_SEND_TIMEOUT_S

    @staticmethod
    def to_json(gc):
        return {
            "db_folder_path": gc.db_folder_path,
            "validator_set": [ValidatorInfo.to_json(v) for v in gc.validator_set],
            "send_timeout_s": gc.send_timeout_s,
        }

    @staticmethod
    def from_json(json):
        return GatewayConfig(
            db_folder_path=json["db_folder_path"],
            validator_set=[ValidatorInfo.from_json(v) for v in json["validator_set"]],
            send_timeout_s=json.get("send_timeout_s", DEFAULT_SEND_TIMEOUT_S),
        )


@dataclass
class EmbeddedGatewayType:
    config: GatewayConfig
    kind: str = field(default="Embedded", init=False)

    @staticmethod
    def to_json(eg):
        return {"kind": eg.kind, "config": GatewayConfig.to_json(eg.config)}

    @staticmethod
    def from_json(json):
        return EmbeddedGatewayType(config=GatewayConfig.from_json(json["config"]))


@dataclass
class RpcGatewayType:
    url: str
    kind: str = field(default="RPC", init=False)

    @staticmethod
    def to_json(rg):
        return {"kind": rg.kind, "url": rg.url}

    @staticmethod
    def from_json(json):
        return RpcGatewayType(url=json["url"])


GatewayType = Union[EmbeddedGatewayType, RpcGatewayType]


def gateway_type_from_json(json) -> GatewayType:
    kind = json.get("kind")
    if kind == "Embedded":
        if "url" in json:
            raise ConfigError("Embedded gateway must not carry a url")
        return EmbeddedGatewayType.from_json(json)
    elif kind == "RPC":
        if "config" in json:
            raise ConfigError("RPC gateway must not carry an embedded config")
        return RpcGatewayType.from_json(json)
    else:
        raise ConfigError(f"Unknown gateway kind: {kind}")


@dataclass
class ClientConfig:
    accounts: List[str]
    keystore: str
    gateway: GatewayType
    active_address: Optional[str] = None

    @staticmethod
    def to_json(cc):
        return {
            "accounts": list(cc.accounts),
            "keystore": {"File": cc.keystore},
            "gateway": cc.gateway.to_json(cc.gateway),
            "active_address": cc.active_address,
        }

    @staticmethod
    def from_json(json):
        return ClientConfig(
            accounts=list(json["accounts"]),
            keystore=json["keystore"]["File"],
            gateway=gateway_type_from_json(json["gateway"]),
            active_address=json.get("active_address"),
        )


@dataclass
class NetworkConfig:
    """
    Topology of a launched swarm, written as the network-config artifact.
    Account keys are never persisted here; they live in the keystore.
    """

    committee_size: int
    validators: List[ValidatorInfo] = field(default_factory=list)
    fullnodes: List[str] = field(default_factory=list)
    accounts: List[str] = field(default_factory=list)
    genesis_objects: List[Dict[str, Any]] = field(default_factory=list)

    def validator_set(self) -> List[ValidatorInfo]:
        return self.validators

    @staticmethod
    def to_json(nc):
        return {
            "committee_size": nc.committee_size,
            "validator_set": [ValidatorInfo.to_json(v) for v in nc.validators],
            "fullnodes": list(nc.fullnodes),
            "accounts": list(nc.accounts),
            "genesis_objects": list(nc.genesis_objects),
        }

    @staticmethod
    def from_json(json):
        return NetworkConfig(
            committee_size=json["committee_size"],
            validators=[ValidatorInfo.from_json(v) for v in json["validator_set"]],
            fullnodes=list(json.get("fullnodes", [])),
            accounts=list(json.get("accounts", [])),
            genesis_objects=list(json.get("genesis_objects", [])),
        )


def save(config, path):
    save_json(path, config.to_json(config))


def read(path, config_type):
    json = read_json(path)
    try:
        return config_type.from_json(json)
    except ConfigError:
        raise
    except (KeyError, TypeError, AttributeError, ValueError) as e:
        raise ConfigError(
            f"Malformed {config_type.__name__} in {path}: {e!r}"
        ) from e


class PersistedConfig:
    """
    A configuration object bound to the file it was read from, so that it can
    be modified in memory and written back in place.
    """

    def __init__(self, config, path):
        self.config = config
        self.path = path

    @staticmethod
    def read(path, config_type):
        return PersistedConfig(read(path, config_type), path)

    def save(self):
        LOG.debug(f"Saving {type(self.config).__name__} to {self.path}")
        save(self.config, self.path)
