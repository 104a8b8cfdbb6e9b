"""Local Ed25519 signing key, stored encrypted at rest in `keystore.json`."""

from __future__ import annotations

import getpass
import json
import logging
import os
import socket
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


logger = logging.getLogger(__name__)

UNSIGNED = "unsigned"
KDF_ITERATIONS = 100_000
SALT_BYTES = 32
IV_BYTES = 12
TAG_BYTES = 16
KEYSTORE_FIELDS = ("public_key_pem", "encrypted_private_key", "iv", "tag", "salt", "created_at")


def _machine_secret() -> bytes:
    try:
        username = getpass.getuser()
    except (KeyError, OSError):
        username = "unknown"
    return f"{socket.gethostname()}:{username}:useai-keystore".encode("utf-8")


def derive_encryption_key(salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=KDF_ITERATIONS)
    return kdf.derive(_machine_secret())


def public_key_pem(key: Ed25519PrivateKey) -> str:
    return key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("utf-8")


def generate_keystore() -> tuple[dict[str, str], Ed25519PrivateKey]:
    """Create a fresh key pair and its encrypted keystore document."""

    private_key = Ed25519PrivateKey.generate()
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    salt = os.urandom(SALT_BYTES)
    iv = os.urandom(IV_BYTES)
    sealed = AESGCM(derive_encryption_key(salt)).encrypt(iv, private_pem, None)
    ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    keystore = {
        "public_key_pem": public_key_pem(private_key),
        "encrypted_private_key": ciphertext.hex(),
        "iv": iv.hex(),
        "tag": tag.hex(),
        "salt": salt.hex(),
        "created_at": datetime.now(tz=UTC).isoformat().replace("+00:00", "Z"),
    }
    return keystore, private_key


def decrypt_keystore(keystore: dict[str, Any]) -> Ed25519PrivateKey:
    """Decrypt the private key; raises ValueError when the keystore is unusable."""

    if not isinstance(keystore, dict):
        raise ValueError("Keystore must be a JSON object.")
    missing = [field for field in KEYSTORE_FIELDS if not isinstance(keystore.get(field), str)]
    if missing:
        raise ValueError(f"Keystore missing fields: {', '.join(missing)}")
    try:
        salt = bytes.fromhex(keystore["salt"])
        iv = bytes.fromhex(keystore["iv"])
        sealed = bytes.fromhex(keystore["encrypted_private_key"]) + bytes.fromhex(keystore["tag"])
        private_pem = AESGCM(derive_encryption_key(salt)).decrypt(iv, sealed, None)
    except (ValueError, InvalidTag) as exc:
        raise ValueError("Keystore could not be decrypted on this machine.") from exc
    key = serialization.load_pem_private_key(private_pem, password=None)
    if not isinstance(key, Ed25519PrivateKey):
        raise ValueError("Keystore does not hold an Ed25519 key.")
    return key


def read_public_key_pem(path: Path) -> str | None:
    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        return None
    value = payload.get("public_key_pem") if isinstance(payload, dict) else None
    return value if isinstance(value, str) else None


def load_or_create_signing_key(path: Path) -> Ed25519PrivateKey | None:
    """Return the machine signing key, creating the keystore on first use.

    A keystore that cannot be read or decrypted is replaced. When the new
    keystore cannot be written, the daemon keeps running without a key and
    seals are marked unsigned.
    """

    if path.exists():
        try:
            return decrypt_keystore(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError) as exc:
            logger.warning("Keystore at %s is unusable, regenerating: %s", path, exc)

    keystore, key = generate_keystore()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(keystore, indent=2), encoding="utf-8")
    except OSError as exc:
        logger.warning("Could not write keystore to %s; seals will be unsigned: %s", path, exc)
        return None
    return key


def sign_hash(digest: str, key: Ed25519PrivateKey | None) -> str:
    if key is None:
        return UNSIGNED
    return key.sign(digest.encode("utf-8")).hex()


def verify_signature(digest: str, signature: str, public_pem: str) -> bool:
    if signature == UNSIGNED:
        return False
    try:
        public_key = serialization.load_pem_public_key(public_pem.encode("utf-8"))
        if not isinstance(public_key, Ed25519PublicKey):
            return False
        public_key.verify(bytes.fromhex(signature), digest.encode("utf-8"))
    except (InvalidSignature, ValueError):
        return False
    return True
