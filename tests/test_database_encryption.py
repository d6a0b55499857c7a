"""Tests for token encryption at rest."""

import pytest

from family_sync.database.encryption import create_fernet, decrypt_token, encrypt_token


class TestTokenEncryption:
    def test_round_trip(self):
        ciphertext = encrypt_token("ya29.secret-access-token")

        assert ciphertext != "ya29.secret-access-token"
        assert decrypt_token(ciphertext) == "ya29.secret-access-token"

    def test_ciphertexts_differ(self):
        """Fernet tokens carry a random IV."""
        assert encrypt_token("same") != encrypt_token("same")

    @pytest.mark.parametrize("value", [None, ""])
    def test_empty_values_stored_as_null(self, value):
        assert encrypt_token(value) is None
        assert decrypt_token(value) is None

    def test_other_key_rejected(self):
        """Test tokens written under another secret cannot be read."""
        other = create_fernet("another-secret-key-at-least-32-characters", "other-salt")
        foreign = other.encrypt(b"refresh-token").decode("utf-8")

        with pytest.raises(ValueError, match="Failed to decrypt token"):
            decrypt_token(foreign)
