import json
import tempfile
from pathlib import Path

import pytest

from XT_Harness.crypto import (
    address_from_public_key,
    check_password,
    decrypt_text,
    encrypt_text,
    generate_keypair,
    keypair_from_secret,
    sign_message,
    verify_message,
)
from XT_Harness.wallet_store import KIND_IMPORTED, KIND_RECEIVE, WalletStore


def test_secret_rebuilds_the_same_keypair():
    kp = generate_keypair()
    again = keypair_from_secret(kp.secret)
    assert again.address == kp.address
    assert again.private_key_pem == kp.private_key_pem
    assert kp.address.startswith("0x")
    assert len(kp.address) == 42
    assert kp.address == address_from_public_key(kp.public_key_pem)
    assert generate_keypair().address != kp.address


def test_bad_secrets_rejected():
    with pytest.raises(ValueError):
        keypair_from_secret("not-hex")
    with pytest.raises(ValueError):
        keypair_from_secret("0")


def test_signatures_bind_key_and_message():
    kp = generate_keypair()
    other = generate_keypair()
    sig = sign_message(kp, b"block:1")
    assert verify_message(kp.public_key_pem, b"block:1", sig)
    assert not verify_message(kp.public_key_pem, b"block:2", sig)
    assert not verify_message(other.public_key_pem, b"block:1", sig)
    assert not verify_message(kp.public_key_pem, b"block:1", "zz")


def test_encrypt_text_needs_the_right_password():
    env = encrypt_text("payload", "testtest")
    assert decrypt_text(env["ciphertext"], "testtest", env["salt"]) == "payload"
    assert check_password(env, "testtest")
    assert not check_password(env, "this is not the correct wallet passphrase")


def test_wallet_create_and_open():
    with tempfile.TemporaryDirectory() as td:
        store = WalletStore(td)
        store.create_wallet(passphrase="testtest", name="participant_000")
        assert store.exists()
        assert store.open_wallet("")
        assert not store.open_wallet("something")
        assert store.check_passphrase("testtest")
        assert not store.check_passphrase("wrong")
        summary = store.summary()
        assert summary.name == "participant_000"
        assert summary.encrypted is False
        assert summary.key_count == 0
        with pytest.raises(FileExistsError):
            store.create_wallet(passphrase="testtest")


def test_wallet_with_password():
    with tempfile.TemporaryDirectory() as td:
        store = WalletStore(Path(td) / "nested")
        store.create_wallet(passphrase="testtest", password="pw123")
        assert store.open_wallet("pw123")
        assert not store.open_wallet("")
        assert store.summary().encrypted


def test_wallet_requires_passphrase():
    with tempfile.TemporaryDirectory() as td:
        with pytest.raises(ValueError):
            WalletStore(td).create_wallet(passphrase="")


def test_wallet_keys_and_receive_addresses():
    with tempfile.TemporaryDirectory() as td:
        store = WalletStore(td)
        store.create_wallet(passphrase="testtest")
        kp = generate_keypair()
        with pytest.raises(ValueError):
            store.add_key(kp, "wrong")
        assert store.add_key(kp, "testtest")
        assert not store.add_key(kp, "testtest")

        a1 = store.new_receive_address("address_test_account", "testtest")
        a2 = store.new_receive_address("circle_test", "testtest")
        assert a1 != a2
        assert store.receive_addresses() == {a1: "address_test_account", a2: "circle_test"}
        assert store.addresses(KIND_IMPORTED) == [kp.address]
        assert store.addresses(KIND_RECEIVE) == [a1, a2]
        assert len(store.addresses()) == 3

        raw = json.loads((Path(td) / "wallet.json").read_text(encoding="utf-8"))
        assert kp.secret not in json.dumps(raw)
        assert all("encrypted_private_key" in k for k in raw["keys"])
