"""Tests for the credential vault."""

import os

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from copytrader.common.config import VaultConfig
from copytrader.common.exceptions import ConfigurationError, DecryptionError
from copytrader.common.vault import CredentialVault

KEY = "00112233445566778899aabbccddeeff" * 2


class TestCredentialVault:
    """AES-256-GCM with the iv:authTag:ciphertext layout."""

    def test_encrypt_decrypt(self, vault):
        token = vault.encrypt("5KQwrPbwdL6PhXujxW37FSSQZ1JiwsST4cqQzDeyXtP79zkvFD3")
        assert vault.decrypt(token) == "5KQwrPbwdL6PhXujxW37FSSQZ1JiwsST4cqQzDeyXtP79zkvFD3"

    def test_token_layout(self, vault):
        iv, tag, ciphertext = vault.encrypt("secret").split(":")
        assert len(bytes.fromhex(iv)) == 16
        assert len(bytes.fromhex(tag)) == 16
        assert len(bytes.fromhex(ciphertext)) == len("secret")

    def test_decrypts_externally_produced_token(self, vault):
        iv = os.urandom(16)
        sealed = AESGCM(bytes.fromhex(KEY)).encrypt(iv, b"agent-key", None)
        token = f"{iv.hex()}:{sealed[-16:].hex()}:{sealed[:-16].hex()}"
        assert vault.decrypt(token) == "agent-key"

    def test_tampered_ciphertext(self, vault):
        iv, tag, ciphertext = vault.encrypt("secret").split(":")
        flipped = format(int(ciphertext[:2], 16) ^ 0xFF, "02x") + ciphertext[2:]
        with pytest.raises(DecryptionError):
            vault.decrypt(f"{iv}:{tag}:{flipped}")

    def test_wrong_key(self, vault):
        token = vault.encrypt("secret")
        other = CredentialVault("ff" * 32)
        with pytest.raises(DecryptionError):
            other.decrypt(token)

    @pytest.mark.parametrize("token", ["", "abc", "aa:bb", "zz:zz:zz", None])
    def test_malformed_token(self, vault, token):
        with pytest.raises(DecryptionError):
            vault.decrypt(token)

    def test_invalid_key(self):
        with pytest.raises(ConfigurationError):
            CredentialVault("tooshort")

    def test_from_config_requires_key(self):
        with pytest.raises(ConfigurationError):
            CredentialVault.from_config(VaultConfig(encryption_key=None))
        assert isinstance(CredentialVault.from_config(VaultConfig(encryption_key=KEY)), CredentialVault)
