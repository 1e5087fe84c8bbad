from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

SECP256R1_ORDER = int(
    "FFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551", 16
)

KDF_ITERATIONS = 200_000


@dataclass(frozen=True)
class KeyPair:
    secret: str
    private_key_pem: bytes
    public_key_pem: bytes
    address: str


def address_from_public_key(public_key_pem: bytes) -> str:
    pub = serialization.load_pem_public_key(public_key_pem)
    der = pub.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return "0x" + hashlib.sha256(der).hexdigest()[:40]


def keypair_from_secret(secret: str) -> KeyPair:
    """Rebuild a key pair from the hex secret printed by `generate_keypair`."""
    try:
        secret_int = int(secret, 16)
    except (TypeError, ValueError) as exc:
        raise ValueError("secret must be a hex string") from exc
    if not 0 < secret_int < SECP256R1_ORDER:
        raise ValueError("secret out of range for secp256r1")

    private_key = ec.derive_private_key(secret_int, ec.SECP256R1())
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return KeyPair(
        secret=format(secret_int, "064x"),
        private_key_pem=private_pem,
        public_key_pem=public_pem,
        address=address_from_public_key(public_pem),
    )


def generate_keypair() -> KeyPair:
    secret_int = secrets.randbelow(SECP256R1_ORDER - 1) + 1
    return keypair_from_secret(format(secret_int, "064x"))


def sign_message(keypair: KeyPair, message: bytes) -> str:
    private_key = serialization.load_pem_private_key(keypair.private_key_pem, password=None)
    digest = hashlib.sha256(message).digest()
    return private_key.sign(digest, ec.ECDSA(hashes.SHA256())).hex()


def verify_message(public_key_pem: bytes, message: bytes, signature_hex: str) -> bool:
    try:
        public_key = serialization.load_pem_public_key(public_key_pem)
        if not isinstance(public_key, ec.EllipticCurvePublicKey):
            return False
        digest = hashlib.sha256(message).digest()
        public_key.verify(bytes.fromhex(signature_hex), digest, ec.ECDSA(hashes.SHA256()))
        return True
    except (InvalidSignature, ValueError, TypeError):
        return False


def password_to_fernet_key(password: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    key = kdf.derive(password.encode("utf-8"))
    return base64.urlsafe_b64encode(key)


def encrypt_text(plain_text: str, password: str, salt: Optional[bytes] = None) -> dict:
    salt = salt or secrets.token_bytes(16)
    f = Fernet(password_to_fernet_key(password, salt))
    token = f.encrypt(plain_text.encode("utf-8"))
    return {
        "salt": base64.b64encode(salt).decode("ascii"),
        "ciphertext": token.decode("ascii"),
    }


def decrypt_text(ciphertext: str, password: str, salt_b64: str) -> str:
    salt = base64.b64decode(salt_b64.encode("ascii"))
    f = Fernet(password_to_fernet_key(password, salt))
    data = f.decrypt(ciphertext.encode("ascii"))
    return data.decode("utf-8")


def check_password(envelope: dict, password: str) -> bool:
    try:
        decrypt_text(envelope["ciphertext"], password, envelope["salt"])
    except InvalidToken:
        return False
    return True
