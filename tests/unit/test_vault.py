"""Tests for token encryption at rest."""
import pytest

from codetrack.gitlab.vault import TokenVault


class TestTokenVault:
    def test_round_trip(self, vault):
        ciphertext = vault.encrypt("glpat-abc123")
        assert vault.decrypt(ciphertext) == "glpat-abc123"

    def test_ciphertext_is_not_plaintext(self, vault):
        assert "glpat-abc123" not in vault.encrypt("glpat-abc123")

    def test_fresh_iv_per_call(self, vault):
        """Same plaintext encrypts differently each time."""
        assert vault.encrypt("same-token") != vault.encrypt("same-token")

    def test_unicode_round_trip(self, vault):
        assert vault.decrypt(vault.encrypt("tökén-✓")) == "tökén-✓"

    def test_garbage_returns_none(self, vault):
        assert vault.decrypt("not-a-fernet-token") is None

    def test_empty_and_none_return_none(self, vault):
        assert vault.decrypt("") is None
        assert vault.decrypt(None) is None

    def test_non_string_returns_none(self, vault):
        assert vault.decrypt(12345) is None

    def test_wrong_key_returns_none(self, vault):
        other = TokenVault("a-different-secret")
        assert other.decrypt(vault.encrypt("glpat-abc123")) is None

    def test_tampered_ciphertext_returns_none(self, vault):
        ciphertext = vault.encrypt("glpat-abc123")
        tampered = ciphertext[:-4] + ("AAAA" if not ciphertext.endswith("AAAA") else "BBBB")
        assert vault.decrypt(tampered) is None

    def test_empty_secret_rejected(self):
        with pytest.raises(RuntimeError, match="ENCRYPTION_KEY"):
            TokenVault("")

    def test_same_secret_shares_key(self, vault, settings):
        """A second vault built from the same passphrase reads the first one's tokens."""
        again = TokenVault(settings.encryption_key)
        assert again.decrypt(vault.encrypt("xyz")) == "xyz"
