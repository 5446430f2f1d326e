"""Tests for the credential vault."""

import pytest

from trader_config.config import VaultConfig
from trader_config.exceptions import CryptoError
from trader_config.vault import ENVELOPE_PREFIX, CredentialVault, derive_key


class TestCredentialVault:
    def test_round_trip(self, vault):
        stored = vault.encrypt_for_storage("sk-secret")
        assert stored.startswith(ENVELOPE_PREFIX)
        assert "sk-secret" not in stored
        assert vault.decrypt_from_storage(stored) == "sk-secret"

    def test_empty_value_untouched(self, vault):
        assert vault.encrypt_for_storage("") == ""
        assert vault.decrypt_from_storage("") == ""

    def test_envelope_shaped_plaintext_round_trips(self, vault):
        once = vault.encrypt_for_storage("value")
        twice = vault.encrypt_for_storage(once)
        assert twice != once
        assert vault.decrypt_from_storage(twice) == once

    def test_legacy_plaintext_passes_through(self, vault):
        assert vault.decrypt_from_storage("plain-api-key") == "plain-api-key"

    def test_disabled_vault_is_identity(self):
        vault = CredentialVault()
        assert vault.enabled is False
        assert vault.encrypt_for_storage("value") == "value"

    def test_wrong_key_returns_stored_value(self, vault):
        stored = vault.encrypt_for_storage("value")
        other = CredentialVault([CredentialVault.generate_key()])
        assert other.decrypt_from_storage(stored) == stored

    def test_corrupt_token_returns_stored_value(self, vault):
        corrupt = ENVELOPE_PREFIX + "not-a-token"
        assert vault.decrypt_from_storage(corrupt) == corrupt

    def test_invalid_key_material(self):
        with pytest.raises(CryptoError):
            CredentialVault(["too-short"])

    def test_is_encrypted_storage_value(self):
        assert CredentialVault.is_encrypted_storage_value(ENVELOPE_PREFIX + "x")
        assert not CredentialVault.is_encrypted_storage_value("x")


class TestKeyRotation:
    def test_old_ciphertext_readable_after_rotation(self):
        old_key = CredentialVault.generate_key()
        new_key = CredentialVault.generate_key()
        stored = CredentialVault([old_key]).encrypt_for_storage("value")

        rotated_vault = CredentialVault([new_key, old_key])
        assert rotated_vault.decrypt_from_storage(stored) == "value"

        rotated = rotated_vault.rotate(stored)
        assert CredentialVault([new_key]).decrypt_from_storage(rotated) == "value"


class TestVaultFromConfig:
    def test_passphrase_derivation_is_stable(self):
        config = VaultConfig(passphrase="correct horse", salt="pepper")
        first = CredentialVault.from_config(config)
        second = CredentialVault.from_config(config)

        stored = first.encrypt_for_storage("value")
        assert second.decrypt_from_storage(stored) == "value"
        assert derive_key("correct horse", "pepper") == derive_key("correct horse", "pepper")

    def test_no_key_material_disables(self):
        assert CredentialVault.from_config(VaultConfig()).enabled is False
