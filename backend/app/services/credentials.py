"""
Credential Resolver

Works out which API key each provider call should use and keeps the
per-user keys encrypted at rest.
"""
import base64
import hashlib
from typing import Dict, Iterable, Optional

from cryptography.fernet import Fernet, InvalidToken

from app.core.config import Settings
from app.core.exceptions import CredentialError
from app.core.logging import get_logger

logger = get_logger(__name__)


def derive_fernet_key(secret: str) -> bytes:
    """Fernet needs 32 url-safe base64 bytes; derive them from any secret string."""
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


class CredentialResolver:
    """
    Resolution order per provider:
    1. key supplied with the request
    2. key stored (encrypted) on the user record
    3. system-wide key from settings
    """

    def __init__(self, settings: Settings):
        self._settings = settings
        self._fernet = Fernet(derive_fernet_key(settings.ENCRYPTION_KEY))

    def encrypt(self, api_key: str) -> str:
        return self._fernet.encrypt(api_key.encode("utf-8")).decode("utf-8")

    def decrypt(self, provider: str, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except (InvalidToken, ValueError) as e:
            raise CredentialError(provider, str(e) or e.__class__.__name__)

    def resolve(
        self,
        providers: Iterable[str],
        stored_keys: Dict[str, str],
        supplied: Optional[Dict[str, str]] = None
    ) -> Dict[str, Optional[str]]:
        """
        Pick one credential per provider.

        Args:
            providers: Provider names needed by the query
            stored_keys: The user's encrypted keys (provider -> token)
            supplied: Plain keys passed with the request

        Returns:
            provider -> key, None where no key is available
        """
        supplied = {k.lower(): v for k, v in (supplied or {}).items() if v}
        resolved: Dict[str, Optional[str]] = {}

        for provider in providers:
            key = supplied.get(provider)

            if key is None and provider in stored_keys:
                try:
                    key = self.decrypt(provider, stored_keys[provider])
                except CredentialError as e:
                    logger.error(f"{e}; falling back to system key")

            if key is None:
                key = self._settings.system_api_key(provider)

            if key is None:
                logger.warning(f"No API key available for provider {provider}")
            resolved[provider] = key

        return resolved
