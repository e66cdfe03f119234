# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
import abc
import http
from typing import Any, List, Optional

import httpx
from loguru import logger as LOG

import swarmnet.clients
import swarmnet.config
import swarmnet.crypto
import swarmnet.rpc_api
import swarmnet.store
from swarmnet.errors import GatewayError, InvalidArgumentError


def quorum_threshold(committee_size: int) -> int:
    """
    Acknowledgements needed for a transaction to be final: 2f+1 out of n
    validators, tolerating f = (n-1)//3 faults.
    """
    f = (committee_size - 1) // 3
    return 2 * f + 1


class GatewayClient(abc.ABC):
    """
    Facade over a test network's ledger, either talking to the validators
    directly (:py:class:`EmbeddedGateway`) or through a JSON-RPC front-end
    (:py:class:`RpcGatewayClient`). Objects and transactions are plain dicts;
    binary payloads are base64 strings.
    """

    @abc.abstractmethod
    def execute_transaction(self, tx_bytes: str, signature: str, pub_key: str) -> dict:
        pass

    @abc.abstractmethod
    def sync_account_state(self, address: str) -> None:
        pass

    @abc.abstractmethod
    def get_objects_owned_by_address(self, address: str) -> List[dict]:
        pass

    @abc.abstractmethod
    def get_object(self, object_id: str) -> dict:
        pass

    @abc.abstractmethod
    def get_total_transaction_number(self) -> int:
        pass

    @abc.abstractmethod
    def get_transactions_in_range(self, start: int, end: int) -> List[list]:
        pass

    @abc.abstractmethod
    def get_recent_transactions(self, count: int) -> List[list]:
        pass

    @abc.abstractmethod
    def get_transaction(self, digest: str) -> dict:
        pass

    @abc.abstractmethod
    def transfer_object(self, signer: str, object_id: str, recipient: str) -> dict:
        pass

    @abc.abstractmethod
    def split_coin(
        self, signer: str, coin_object_id: str, split_amounts: List[int]
    ) -> dict:
        pass

    @abc.abstractmethod
    def merge_coins(self, signer: str, primary_coin: str, coin_to_merge: str) -> dict:
        pass

    def close(self):
        pass


class EmbeddedGateway(GatewayClient):
    """
    In-process gateway: reads from and submits to the validator set over the
    nodes' HTTP API and keeps synced state in its local storage folder.
    """

    def __init__(self, config: swarmnet.config.GatewayConfig):
        if not config.validator_set:
            raise GatewayError("Gateway configuration has an empty validator set")
        self.config = config
        self.store = swarmnet.store.ClientStore(config.db_folder_path)
        self.session = httpx.Client(timeout=config.send_timeout_s, trust_env=False)

    @property
    def validators(self):
        return self.config.validator_set

    def _read(self, path: str) -> Optional[Any]:
        """
        Query validators in order until one answers. ``None`` means not found.
        """
        errors = []
        for validator in self.validators:
            try:
                r = self.session.get(f"http://{validator.network_address}{path}")
            except httpx.TransportError as e:
                errors.append(f"{validator.name}: {e!r}")
                continue
            if r.status_code == http.HTTPStatus.OK:
                return r.json()
            if r.status_code == http.HTTPStatus.NOT_FOUND:
                return None
            errors.append(f"{validator.name}: {r.status_code} {r.text}")
        raise GatewayError(f"No validator could serve {path}: {errors}")

    def _fetch_objects(self, object_ids: List[str]) -> List[dict]:
        objects = []
        for object_id in object_ids:
            obj = self._read(f"/objects/{object_id}")
            if obj is None:
                raise GatewayError(f"Object {object_id} disappeared while syncing")
            objects.append(obj)
        return objects

    def _reachable_validators(self):
        reachable = []
        errors = []
        for validator in self.validators:
            try:
                r = self.session.get(f"http://{validator.network_address}/node/state")
            except httpx.TransportError as e:
                errors.append(f"{validator.name}: {e!r}")
                continue
            if r.status_code == http.HTTPStatus.OK:
                reachable.append(validator)
            else:
                errors.append(f"{validator.name}: {r.status_code} {r.text}")
        return reachable, errors

    def execute_transaction(self, tx_bytes, signature, pub_key):
        body = {"tx_bytes": tx_bytes, "signature": signature, "public_key": pub_key}
        threshold = quorum_threshold(len(self.validators))

        # Nothing is submitted unless a quorum can acknowledge it
        reachable, errors = self._reachable_validators()
        if len(reachable) < threshold:
            raise GatewayError(
                f"Only {len(reachable)}/{threshold} validators reachable, transaction not submitted: {errors}"
            )

        acks = []
        rejections = []
        for validator in reachable:
            try:
                r = self.session.post(
                    f"http://{validator.network_address}/transactions", json=body
                )
            except httpx.TransportError as e:
                errors.append(f"{validator.name}: {e!r}")
                continue
            if r.status_code == http.HTTPStatus.OK:
                acks.append((validator.name, r.json()))
            elif r.status_code == http.HTTPStatus.BAD_REQUEST:
                rejections.append(r.json().get("error", r.text))
            else:
                errors.append(f"{validator.name}: {r.status_code} {r.text}")

        if len(acks) < threshold:
            if rejections:
                raise swarmnet.store.TransactionError(rejections[0])
            raise GatewayError(
                f"Transaction reached {len(acks)}/{threshold} validators: {errors}"
            )

        effects = acks[0][1]
        updated = self._fetch_objects(
            [ref["object_id"] for ref in effects["created"] + effects["mutated"]]
        )
        self.store.apply_effects(
            effects["transaction_digest"], updated, effects["deleted"]
        )
        LOG.debug(
            f"Transaction {effects['transaction_digest']} certified by {[name for name, _ in acks]}"
        )
        return dict(effects, signers=[name for name, _ in acks])

    def sync_account_state(self, address):
        refs = self._read(f"/owners/{address}/objects") or []
        objects = self._fetch_objects([ref["object_id"] for ref in refs])
        self.store.replace_owned(address, objects)
        LOG.debug(f"Synced {len(objects)} objects for {address}")

    def get_objects_owned_by_address(self, address):
        return self.store.owned_by(address)

    def get_object(self, object_id):
        obj = self._read(f"/objects/{object_id}")
        if obj is None:
            return {"status": "NotExists", "object_id": object_id}
        return {"status": "Exists", "details": obj}

    def get_total_transaction_number(self):
        return self._read("/node/state")["seqno"]

    def get_transactions_in_range(self, start, end):
        if start > end:
            raise InvalidArgumentError(f"Invalid range: start {start} > end {end}")
        entries = self._read(f"/transactions?start={start}&end={end}") or []
        return [[e["seqno"], e["digest"]] for e in entries]

    def get_recent_transactions(self, count):
        if count < 0:
            raise InvalidArgumentError(f"Invalid count: {count}")
        total = self.get_total_transaction_number()
        start = max(1, total - count + 1)
        return self.get_transactions_in_range(start, total + 1)

    def get_transaction(self, digest):
        entry = self._read(f"/transactions/{digest}")
        if entry is None:
            raise GatewayError(f"Transaction {digest} not found")
        return {"digest": entry["digest"], "data": entry["data"], "effects": entry["effects"]}

    def _owned_object(self, signer, object_id):
        obj = self._read(f"/objects/{object_id}")
        if obj is None:
            raise GatewayError(f"Object {object_id} does not exist")
        if obj["owner"] != signer:
            raise GatewayError(f"Object {object_id} is not owned by {signer}")
        return obj

    @staticmethod
    def _transaction_bytes(data):
        return {
            "tx_bytes": swarmnet.crypto.b64encode(
                swarmnet.store.encode_transaction(data)
            )
        }

    def transfer_object(self, signer, object_id, recipient):
        self._owned_object(signer, object_id)
        return self._transaction_bytes(
            {
                "kind": swarmnet.store.TRANSFER_OBJECT,
                "sender": signer,
                "object_id": object_id,
                "recipient": recipient,
            }
        )

    def split_coin(self, signer, coin_object_id, split_amounts):
        self._owned_object(signer, coin_object_id)
        return self._transaction_bytes(
            {
                "kind": swarmnet.store.SPLIT_COIN,
                "sender": signer,
                "coin_object_id": coin_object_id,
                "split_amounts": list(split_amounts),
            }
        )

    def merge_coins(self, signer, primary_coin, coin_to_merge):
        self._owned_object(signer, primary_coin)
        self._owned_object(signer, coin_to_merge)
        return self._transaction_bytes(
            {
                "kind": swarmnet.store.MERGE_COINS,
                "sender": signer,
                "primary_coin": primary_coin,
                "coin_to_merge": coin_to_merge,
            }
        )

    def close(self):
        self.session.close()


class RpcGatewayClient(GatewayClient):
    """
    Gateway facade forwarding every operation to a JSON-RPC front-end.
    """

    def __init__(self, url: str, timeout=swarmnet.clients.DEFAULT_REQUEST_TIMEOUT_SEC):
        self.url = url
        self.client = swarmnet.clients.JsonRpcClient(url, timeout=timeout)

    def _call(self, method, *params):
        return self.client.request(method, list(params))

    def execute_transaction(self, tx_bytes, signature, pub_key):
        return self._call(
            swarmnet.rpc_api.EXECUTE_TRANSACTION, tx_bytes, signature, pub_key
        )

    def sync_account_state(self, address):
        self._call(swarmnet.rpc_api.SYNC_ACCOUNT_STATE, address)

    def get_objects_owned_by_address(self, address):
        return self._call(swarmnet.rpc_api.GET_OBJECTS_OWNED_BY_ADDRESS, address)

    def get_object(self, object_id):
        return self._call(swarmnet.rpc_api.GET_OBJECT, object_id)

    def get_total_transaction_number(self):
        return self._call(swarmnet.rpc_api.GET_TOTAL_TRANSACTION_NUMBER)

    def get_transactions_in_range(self, start, end):
        return self._call(swarmnet.rpc_api.GET_TRANSACTIONS_IN_RANGE, start, end)

    def get_recent_transactions(self, count):
        return self._call(swarmnet.rpc_api.GET_RECENT_TRANSACTIONS, count)

    def get_transaction(self, digest):
        return self._call(swarmnet.rpc_api.GET_TRANSACTION, digest)

    def transfer_object(self, signer, object_id, recipient):
        return self._call(swarmnet.rpc_api.TRANSFER_OBJECT, signer, object_id, recipient)

    def split_coin(self, signer, coin_object_id, split_amounts):
        return self._call(
            swarmnet.rpc_api.SPLIT_COIN, signer, coin_object_id, list(split_amounts)
        )

    def merge_coins(self, signer, primary_coin, coin_to_merge):
        return self._call(
            swarmnet.rpc_api.MERGE_COINS, signer, primary_coin, coin_to_merge
        )

    def close(self):
        self.client.close()


def create_client(config_path: str) -> EmbeddedGateway:
    """
    Build an embedded gateway from a persisted gateway configuration.
    """
    config = swarmnet.config.read(config_path, swarmnet.config.GatewayConfig)
    return EmbeddedGateway(config)


def create_gateway(gateway: swarmnet.config.GatewayType) -> GatewayClient:
    if isinstance(gateway, swarmnet.config.EmbeddedGatewayType):
        return EmbeddedGateway(gateway.config)
    elif isinstance(gateway, swarmnet.config.RpcGatewayType):
        return RpcGatewayClient(gateway.url)
    raise TypeError(f"Unknown gateway type: {gateway!r}")
