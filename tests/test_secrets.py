import pytest

from autoscribe.errors import ConfigError
from autoscribe.security.secrets import credential_aad, decrypt_secret, encrypt_secret


def test_encrypt_decrypt_roundtrip():
    key_id, blob = encrypt_secret("supersecret", credential_aad("openai", "cred_1"))
    assert key_id == "v1"
    assert "supersecret" not in blob
    assert decrypt_secret(blob, credential_aad("openai", "cred_1")) == "supersecret"


def test_decrypt_rejects_blob_from_another_credential():
    _, blob = encrypt_secret("supersecret", credential_aad("openai", "cred_1"))
    with pytest.raises(ConfigError):
        decrypt_secret(blob, credential_aad("openai", "cred_2"))


def test_missing_master_key(monkeypatch):
    monkeypatch.delenv("AS_MASTER_KEY")
    with pytest.raises(ConfigError, match="AS_MASTER_KEY"):
        encrypt_secret("supersecret", b"aad")


def test_short_master_key(monkeypatch):
    monkeypatch.setenv("AS_MASTER_KEY", "c2hvcnQ")
    with pytest.raises(ConfigError, match="32 bytes"):
        encrypt_secret("supersecret", b"aad")


def test_decrypt_rejects_corrupt_blobs():
    aad = credential_aad("openai", "cred_1")
    for blob in ("x", "c2hvcnQ", "bm90LWEtcmVhbC1ibG9iLWF0LWFsbA"):
        with pytest.raises(ConfigError):
            decrypt_secret(blob, aad)
