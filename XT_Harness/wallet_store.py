from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from XT_Harness.crypto import KeyPair, check_password, encrypt_text, generate_keypair

WALLET_FILENAME = "wallet.json"
WALLET_VERSION = 1

PASSPHRASE_CHECK_TEXT = "xt-wallet-passphrase"
PASSWORD_CHECK_TEXT = "xt-wallet-password"

KIND_RECEIVE = "receive"
KIND_IMPORTED = "imported"


@dataclass
class WalletSummary:
    name: str
    created_at: str
    encrypted: bool
    key_count: int


class WalletStore:
    """Wallet file in a node's data directory.

    The harness writes the file directly so the node never has to prompt for
    passwords. The wallet-level password guards opening the file and may be
    empty; the passphrase encrypts private keys and is required to add keys.
    """

    def __init__(self, data_dir: str | Path, filename: str = WALLET_FILENAME):
        self.base_dir = Path(data_dir)
        self.wallet_file = self.base_dir / filename

    def exists(self) -> bool:
        return self.wallet_file.exists()

    def create_wallet(self, passphrase: str, password: str = "", name: str = "default") -> Dict[str, Any]:
        if self.exists():
            raise FileExistsError(f"wallet already exists: {self.wallet_file}")
        if not passphrase:
            raise ValueError("passphrase_required")

        self.base_dir.mkdir(parents=True, exist_ok=True)
        payload = {
            "version": WALLET_VERSION,
            "name": name,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "password_check": encrypt_text(PASSWORD_CHECK_TEXT, password) if password else None,
            "passphrase_check": encrypt_text(PASSPHRASE_CHECK_TEXT, passphrase),
            "keys": [],
        }
        self._save(payload)
        return payload

    def _load(self) -> Dict[str, Any]:
        if not self.wallet_file.exists():
            raise FileNotFoundError("wallet not found")
        payload = json.loads(self.wallet_file.read_text(encoding="utf-8"))
        if payload.get("version") != WALLET_VERSION:
            raise ValueError(f"unsupported wallet version: {payload.get('version')}")
        return payload

    def _save(self, payload: Dict[str, Any]) -> None:
        tmp = self.wallet_file.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp.replace(self.wallet_file)

    def open_wallet(self, password: str = "") -> bool:
        payload = self._load()
        check = payload.get("password_check")
        if check is None:
            return password == ""
        return check_password(check, password)

    def check_passphrase(self, passphrase: str) -> bool:
        return check_password(self._load()["passphrase_check"], passphrase)

    def add_key(self, keypair: KeyPair, passphrase: str, label: Optional[str] = None, kind: str = KIND_IMPORTED) -> bool:
        payload = self._load()
        if not check_password(payload["passphrase_check"], passphrase):
            raise ValueError("invalid_passphrase")
        if any(k["address"] == keypair.address for k in payload["keys"]):
            return False
        payload["keys"].append(
            {
                "address": keypair.address,
                "public_key_pem": keypair.public_key_pem.decode("utf-8"),
                "encrypted_private_key": encrypt_text(keypair.private_key_pem.decode("utf-8"), passphrase),
                "label": label,
                "kind": kind,
            }
        )
        self._save(payload)
        return True

    def new_receive_address(self, label: str, passphrase: str) -> str:
        keypair = generate_keypair()
        self.add_key(keypair, passphrase, label=label, kind=KIND_RECEIVE)
        return keypair.address

    def receive_addresses(self) -> Dict[str, str]:
        return {
            k["address"]: k.get("label") or ""
            for k in self._load()["keys"]
            if k.get("kind") == KIND_RECEIVE
        }

    def addresses(self, kind: Optional[str] = None) -> List[str]:
        return [k["address"] for k in self._load()["keys"] if kind is None or k.get("kind") == kind]

    def summary(self) -> WalletSummary:
        payload = self._load()
        return WalletSummary(
            name=payload.get("name", "default"),
            created_at=payload.get("created_at", ""),
            encrypted=payload.get("password_check") is not None,
            key_count=len(payload.get("keys", [])),
        )
