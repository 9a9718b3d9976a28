from __future__ import annotations

import base64
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ..errors import ConfigError

MASTER_KEY_ENV = "AS_MASTER_KEY"
KEY_ID_ENV = "AS_KEY_ID"

DEFAULT_KEY_ID = "v1"
HKDF_INFO = b"autoscribe:credentials:v1"
NONCE_SIZE = 12


@dataclass(frozen=True)
class SecretBox:
    key_id: str
    aesgcm: AESGCM


def generate_master_key() -> str:
    return base64.urlsafe_b64encode(os.urandom(32)).decode("utf-8").rstrip("=")


def load_secret_box() -> SecretBox:
    master_b64 = os.environ.get(MASTER_KEY_ENV, "").strip()
    if not master_b64:
        raise ConfigError(f"Master key is not set. Set {MASTER_KEY_ENV}.")
    try:
        master = base64.urlsafe_b64decode(_pad_b64(master_b64))
    except ValueError as exc:
        raise ConfigError("Master key is not valid base64url") from exc
    if len(master) != 32:
        raise ConfigError("Master key must be 32 bytes (base64url encoded)")

    hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=HKDF_INFO)
    derived = hkdf.derive(master)
    key_id = os.environ.get(KEY_ID_ENV) or DEFAULT_KEY_ID
    return SecretBox(key_id=key_id, aesgcm=AESGCM(derived))


def credential_aad(provider: str, credential_id: str) -> bytes:
    # Binds a ciphertext to its row so blobs cannot be swapped between credentials.
    return f"credential:{provider}:{credential_id}".encode("utf-8")


def encrypt_secret(plaintext: str, aad: bytes) -> tuple[str, str]:
    box = load_secret_box()
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = box.aesgcm.encrypt(nonce, plaintext.encode("utf-8"), aad)
    blob = base64.urlsafe_b64encode(nonce + ciphertext).decode("utf-8")
    return box.key_id, blob


def decrypt_secret(blob_b64: str, aad: bytes, box: SecretBox | None = None) -> str:
    box = box or load_secret_box()
    try:
        data = base64.urlsafe_b64decode(_pad_b64(blob_b64))
    except ValueError as exc:
        raise ConfigError("credential blob is not valid base64url") from exc
    if len(data) <= NONCE_SIZE:
        raise ConfigError("credential blob is truncated")
    nonce = data[:NONCE_SIZE]
    ciphertext = data[NONCE_SIZE:]
    try:
        plaintext = box.aesgcm.decrypt(nonce, ciphertext, aad)
    except InvalidTag as exc:
        raise ConfigError("credential cannot be decrypted with the configured master key") from exc
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ConfigError("credential plaintext is not UTF-8") from exc


def _pad_b64(value: str) -> str:
    padding = "=" * (-len(value) % 4)
    return value + padding
