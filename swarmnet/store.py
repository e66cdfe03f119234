# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
import os
import copy
import json
import threading
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger as LOG

import swarmnet.config
import swarmnet.crypto
from swarmnet.errors import GatewayError

TRANSFER_OBJECT = "TransferObject"
SPLIT_COIN = "SplitCoin"
MERGE_COINS = "MergeCoins"

TRANSACTION_KINDS = (TRANSFER_OBJECT, SPLIT_COIN, MERGE_COINS)

STORE_FILE = "store.json"


class TransactionError(GatewayError):
    """
    A transaction was rejected by the object store it was applied to.
    """


def encode_transaction(data: dict) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode()


def decode_transaction(tx_bytes: bytes) -> dict:
    try:
        data = json.loads(tx_bytes)
    except ValueError as e:
        raise TransactionError(f"Transaction bytes are not valid JSON: {e}") from e
    if not isinstance(data, dict) or data.get("kind") not in TRANSACTION_KINDS:
        raise TransactionError(f"Unknown transaction: {data}")
    if "sender" not in data:
        raise TransactionError("Transaction has no sender")
    return data


def object_ref(obj: dict) -> dict:
    return {
        "object_id": obj["object_id"],
        "version": obj["version"],
        "owner": obj["owner"],
    }


class ObjectStore:
    """
    Ledger state of one node: the live objects and the ordered log of applied
    transactions. Every change is written back to ``<storage_dir>/store.json``.
    """

    def __init__(self, storage_dir: Optional[str] = None, objects: Iterable[dict] = ()):
        self.storage_dir = storage_dir
        self._lock = threading.Lock()
        self._objects: Dict[str, dict] = {o["object_id"]: dict(o) for o in objects}
        self._log: List[dict] = []
        self._by_digest: Dict[str, dict] = {}
        if storage_dir is not None:
            os.makedirs(storage_dir, exist_ok=True)
            self._persist()

    def _persist(self):
        if self.storage_dir is None:
            return
        swarmnet.config.save_json(
            os.path.join(self.storage_dir, STORE_FILE),
            {"objects": self._objects, "transactions": self._log},
        )

    def get_object(self, object_id: str) -> Optional[dict]:
        with self._lock:
            obj = self._objects.get(object_id)
            return copy.deepcopy(obj) if obj is not None else None

    def objects_owned_by(self, address: str) -> List[dict]:
        with self._lock:
            return [
                object_ref(o) for o in self._objects.values() if o["owner"] == address
            ]

    def transaction_count(self) -> int:
        with self._lock:
            return len(self._log)

    def transactions_in_range(self, start: int, end: Optional[int] = None) -> List[dict]:
        """
        Log entries with ``start <= seqno < end``. Sequence numbers start at 1.
        """
        with self._lock:
            end = len(self._log) + 1 if end is None else end
            return copy.deepcopy(self._log[max(start, 1) - 1 : max(end, 1) - 1])

    def get_transaction(self, digest: str) -> Optional[dict]:
        with self._lock:
            entry = self._by_digest.get(digest)
            return copy.deepcopy(entry) if entry is not None else None

    def apply(self, tx_bytes: bytes) -> dict:
        """
        Apply an already authenticated transaction and return its effects.
        Re-applying a known transaction returns the recorded effects.
        """
        digest = swarmnet.crypto.digest(tx_bytes)
        data = decode_transaction(tx_bytes)
        with self._lock:
            known = self._by_digest.get(digest)
            if known is not None:
                return copy.deepcopy(known["effects"])

            objects = copy.deepcopy(self._objects)
            kind = data["kind"]
            if kind == TRANSFER_OBJECT:
                effects = self._transfer(objects, data)
            elif kind == SPLIT_COIN:
                effects = self._split(objects, data, digest)
            else:
                effects = self._merge(objects, data)

            seqno = len(self._log) + 1
            effects.update(
                {"status": "success", "transaction_digest": digest, "seqno": seqno}
            )
            entry = {
                "seqno": seqno,
                "digest": digest,
                "tx_bytes": swarmnet.crypto.b64encode(tx_bytes),
                "data": data,
                "effects": effects,
            }
            self._objects = objects
            self._log.append(entry)
            self._by_digest[digest] = entry
            self._persist()
            LOG.trace(f"Applied {kind} {digest} at seqno {seqno}")
            return copy.deepcopy(effects)

    @staticmethod
    def _owned(objects, object_id, sender):
        obj = objects.get(object_id)
        if obj is None:
            raise TransactionError(f"Object {object_id} does not exist")
        if obj["owner"] != sender:
            raise TransactionError(f"Object {object_id} is not owned by {sender}")
        return obj

    def _transfer(self, objects, data):
        obj = self._owned(objects, data["object_id"], data["sender"])
        obj["owner"] = data["recipient"]
        obj["version"] += 1
        return {"created": [], "mutated": [object_ref(obj)], "deleted": []}

    def _split(self, objects, data, digest):
        coin = self._owned(objects, data["coin_object_id"], data["sender"])
        amounts = data["split_amounts"]
        if not amounts or any((not isinstance(a, int)) or a <= 0 for a in amounts):
            raise TransactionError(f"Invalid split amounts: {amounts}")
        if sum(amounts) > coin["balance"]:
            raise TransactionError(
                f"Insufficient balance in {coin['object_id']}: {coin['balance']} < {sum(amounts)}"
            )
        coin["balance"] -= sum(amounts)
        coin["version"] += 1
        created = []
        for i, amount in enumerate(amounts):
            new_id = "0x" + swarmnet.crypto.digest(f"{digest}:{i}".encode())[:40]
            objects[new_id] = {
                "object_id": new_id,
                "version": coin["version"],
                "owner": data["sender"],
                "balance": amount,
            }
            created.append(object_ref(objects[new_id]))
        return {"created": created, "mutated": [object_ref(coin)], "deleted": []}

    def _merge(self, objects, data):
        if data["primary_coin"] == data["coin_to_merge"]:
            raise TransactionError("Cannot merge a coin with itself")
        primary = self._owned(objects, data["primary_coin"], data["sender"])
        merged = self._owned(objects, data["coin_to_merge"], data["sender"])
        primary["balance"] += merged["balance"]
        primary["version"] = max(primary["version"], merged["version"]) + 1
        del objects[merged["object_id"]]
        return {
            "created": [],
            "mutated": [object_ref(primary)],
            "deleted": [merged["object_id"]],
        }


class ClientStore:
    """
    Local storage of an embedded gateway: the objects it has synced or seen
    change, and the digests of the transactions it executed.
    """

    FILE = "objects.json"

    def __init__(self, db_folder_path: str):
        self.path = os.path.join(db_folder_path, self.FILE)
        self._lock = threading.Lock()
        os.makedirs(db_folder_path, exist_ok=True)
        if os.path.exists(self.path):
            state = swarmnet.config.read_json(self.path)
            self._objects = state.get("objects", {})
            self._transactions = state.get("transactions", [])
        else:
            self._objects: Dict[str, Any] = {}
            self._transactions: List[str] = []
            self._persist()

    def _persist(self):
        swarmnet.config.save_json(
            self.path, {"objects": self._objects, "transactions": self._transactions}
        )

    def replace_owned(self, address: str, objects: List[dict]):
        with self._lock:
            self._objects = {
                oid: o for oid, o in self._objects.items() if o["owner"] != address
            }
            for obj in objects:
                self._objects[obj["object_id"]] = obj
            self._persist()

    def apply_effects(self, digest: str, updated: List[dict], deleted: List[str]):
        with self._lock:
            for obj in updated:
                self._objects[obj["object_id"]] = obj
            for object_id in deleted:
                self._objects.pop(object_id, None)
            self._transactions.append(digest)
            self._persist()

    def owned_by(self, address: str) -> List[dict]:
        with self._lock:
            return [
                object_ref(o) for o in self._objects.values() if o["owner"] == address
            ]

    def transactions(self) -> List[str]:
        with self._lock:
            return list(self._transactions)
