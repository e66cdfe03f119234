# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

import json

import pytest

import swarmnet.store
from swarmnet.store import (
    ClientStore,
    ObjectStore,
    TransactionError,
    encode_transaction,
)

ALICE = "0x" + "aa" * 20
BOB = "0x" + "bb" * 20


def genesis_objects():
    return [
        {"object_id": "0x1", "version": 0, "owner": ALICE, "balance": 100},
        {"object_id": "0x2", "version": 0, "owner": ALICE, "balance": 50},
        {"object_id": "0x3", "version": 0, "owner": BOB, "balance": 10},
    ]


def transfer(object_id, sender=ALICE, recipient=BOB):
    return encode_transaction(
        {
            "kind": swarmnet.store.TRANSFER_OBJECT,
            "sender": sender,
            "object_id": object_id,
            "recipient": recipient,
        }
    )


def test_transfer(tmp_path):
    store = ObjectStore(str(tmp_path), genesis_objects())
    effects = store.apply(transfer("0x1"))
    assert effects["status"] == "success"
    assert effects["seqno"] == 1
    assert effects["mutated"] == [{"object_id": "0x1", "version": 1, "owner": BOB}]
    assert store.get_object("0x1")["owner"] == BOB
    assert {ref["object_id"] for ref in store.objects_owned_by(BOB)} == {"0x1", "0x3"}

    persisted = json.loads((tmp_path / swarmnet.store.STORE_FILE).read_text())
    assert persisted["objects"]["0x1"]["owner"] == BOB
    assert len(persisted["transactions"]) == 1


def test_apply_is_idempotent():
    store = ObjectStore(None, genesis_objects())
    tx = transfer("0x1")
    assert store.apply(tx) == store.apply(tx)
    assert store.transaction_count() == 1


def test_rejected_transaction_leaves_state_unchanged():
    store = ObjectStore(None, genesis_objects())
    with pytest.raises(TransactionError):
        store.apply(transfer("0x3"))
    with pytest.raises(TransactionError):
        store.apply(transfer("0x404"))
    with pytest.raises(TransactionError):
        store.apply(b"not a transaction")
    assert store.transaction_count() == 0
    assert store.get_object("0x3")["owner"] == BOB


def test_split_and_merge():
    store = ObjectStore(None, genesis_objects())
    split = encode_transaction(
        {
            "kind": swarmnet.store.SPLIT_COIN,
            "sender": ALICE,
            "coin_object_id": "0x1",
            "split_amounts": [30, 20],
        }
    )
    effects = store.apply(split)
    assert len(effects["created"]) == 2
    assert store.get_object("0x1")["balance"] == 50
    new_coin = effects["created"][0]["object_id"]
    assert store.get_object(new_coin)["balance"] == 30

    merge = encode_transaction(
        {
            "kind": swarmnet.store.MERGE_COINS,
            "sender": ALICE,
            "primary_coin": "0x2",
            "coin_to_merge": new_coin,
        }
    )
    effects = store.apply(merge)
    assert effects["deleted"] == [new_coin]
    assert store.get_object(new_coin) is None
    assert store.get_object("0x2")["balance"] == 80


@pytest.mark.parametrize("amounts", [[], [0], [-5], [101]])
def test_invalid_split(amounts):
    store = ObjectStore(None, genesis_objects())
    tx = encode_transaction(
        {
            "kind": swarmnet.store.SPLIT_COIN,
            "sender": ALICE,
            "coin_object_id": "0x1",
            "split_amounts": amounts,
        }
    )
    with pytest.raises(TransactionError):
        store.apply(tx)


def test_transaction_log_ranges():
    store = ObjectStore(None, genesis_objects())
    digests = [store.apply(transfer(oid))["transaction_digest"] for oid in ("0x1", "0x2")]
    assert [e["digest"] for e in store.transactions_in_range(1)] == digests
    assert [e["digest"] for e in store.transactions_in_range(2, 3)] == digests[1:]
    assert store.transactions_in_range(3) == []
    assert store.get_transaction(digests[0])["seqno"] == 1
    assert store.get_transaction("unknown") is None


def test_client_store_reloads(tmp_path):
    db = str(tmp_path / "client_db")
    store = ClientStore(db)
    store.replace_owned(ALICE, genesis_objects()[:2])
    store.apply_effects(
        "digest", [{"object_id": "0x1", "version": 1, "owner": BOB, "balance": 100}], ["0x2"]
    )

    reloaded = ClientStore(db)
    assert reloaded.owned_by(ALICE) == []
    assert reloaded.owned_by(BOB) == [{"object_id": "0x1", "version": 1, "owner": BOB}]
    assert reloaded.transactions() == ["digest"]
