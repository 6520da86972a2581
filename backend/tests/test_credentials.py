"""Tests for services/credentials.py - Credential resolution."""
import pytest
from pydantic import SecretStr


class TestEncryption:
    """Test encrypting stored keys."""

    def test_encrypt_decrypt_roundtrip(self, resolver):
        token = resolver.encrypt("sk-live-123")

        assert token != "sk-live-123"
        assert resolver.decrypt("openai", token) == "sk-live-123"

    def test_token_from_other_secret_is_rejected(self, test_settings):
        from app.core.exceptions import CredentialError
        from app.services.credentials import CredentialResolver

        other = CredentialResolver(test_settings.model_copy(
            update={"encryption_key": SecretStr("a-different-secret-0123456789abcdef")}
        ))
        token = other.encrypt("sk-live-123")

        with pytest.raises(CredentialError) as exc_info:
            CredentialResolver(test_settings).decrypt("openai", token)
        assert exc_info.value.provider == "openai"

    def test_derived_key_is_valid_fernet_key(self):
        import base64
        from app.services.credentials import derive_fernet_key

        key = derive_fernet_key("short")
        assert len(base64.urlsafe_b64decode(key)) == 32
        assert derive_fernet_key("short") == key


class TestResolve:
    """Test the request -> user -> system resolution order."""

    def test_request_key_wins(self, resolver):
        stored = {"fake": resolver.encrypt("user-key")}

        keys = resolver.resolve(["fake"], stored, {"fake": "request-key"})

        assert keys == {"fake": "request-key"}

    def test_stored_key_used_when_none_supplied(self, resolver):
        stored = {"fake": resolver.encrypt("user-key")}

        assert resolver.resolve(["fake"], stored) == {"fake": "user-key"}

    def test_system_key_is_last_resort(self, test_settings):
        from app.services.credentials import CredentialResolver

        settings = test_settings.model_copy(update={"cohere_api_key": SecretStr("system-key")})
        resolver = CredentialResolver(settings)

        assert resolver.resolve(["cohere"], {}) == {"cohere": "system-key"}

    def test_undecryptable_key_falls_back(self, test_settings):
        from app.services.credentials import CredentialResolver

        settings = test_settings.model_copy(update={"google_api_key": SecretStr("system-key")})
        resolver = CredentialResolver(settings)

        keys = resolver.resolve(["google"], {"google": "not-a-fernet-token"})

        assert keys == {"google": "system-key"}

    def test_missing_key_resolves_to_none(self, resolver):
        assert resolver.resolve(["anthropic"], {}) == {"anthropic": None}

    def test_supplied_names_are_case_insensitive(self, resolver):
        assert resolver.resolve(["openai"], {}, {"OpenAI": "sk-1"}) == {"openai": "sk-1"}
