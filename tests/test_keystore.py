# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

import json

import pytest

import swarmnet.crypto
from swarmnet.errors import ConfigError, GatewayError
from swarmnet.keystore import KeyStore


def test_keystore_save_and_load(tmp_path):
    path = str(tmp_path / "wallet.keystore")
    keys = [swarmnet.crypto.KeyPair.generate() for _ in range(3)]
    keystore = KeyStore()
    for key in keys:
        keystore.add_key(key.address, key)
    keystore.set_path(path)
    keystore.save()

    loaded = KeyStore.load(path)
    assert len(loaded) == 3
    assert sorted(loaded.addresses()) == sorted(k.address for k in keys)
    for key in keys:
        assert loaded.key(key.address) == key
        signature = loaded.sign(key.address, b"payload")
        assert swarmnet.crypto.verify_signature(signature, b"payload", key.public_key)


def test_key_must_match_address():
    key = swarmnet.crypto.KeyPair.generate()
    other = swarmnet.crypto.KeyPair.generate()
    with pytest.raises(ValueError):
        KeyStore().add_key(other.address, key)


def test_unknown_address():
    with pytest.raises(GatewayError):
        KeyStore().key("0x" + "00" * 20)


def test_save_needs_a_path():
    with pytest.raises(ValueError):
        KeyStore().save()


@pytest.mark.parametrize("contents", ["{}", '["not base64!"]', '["AAAA"]', "not json"])
def test_malformed_keystore(tmp_path, contents):
    path = tmp_path / "wallet.keystore"
    path.write_text(contents)
    with pytest.raises(ConfigError):
        KeyStore.load(str(path))


def test_missing_keystore(tmp_path):
    with pytest.raises(ConfigError):
        KeyStore.load(str(tmp_path / "missing.keystore"))


def test_keystore_is_a_json_list(tmp_path):
    path = tmp_path / "wallet.keystore"
    key = swarmnet.crypto.KeyPair.generate()
    keystore = KeyStore(str(path))
    keystore.add_key(key.address, key)
    keystore.save()
    entries = json.loads(path.read_text())
    assert entries == [swarmnet.crypto.b64encode(key.private_bytes())]
