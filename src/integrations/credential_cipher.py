"""
Credential encryption.

Credential bundles are encrypted with Fernet (AES-128-CBC with a random IV per blob plus an
HMAC-SHA256 tag) before they reach any store. CREDENTIAL_ENCRYPTION_KEYS holds one or more Fernet
keys separated by commas: the first key encrypts, every key can decrypt, which allows rotation.
There is no default key. Without one the cipher refuses to construct and the service does not
start.

Generate a key with:
    python -c 'from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())'
"""

from collections.abc import Sequence

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from pydantic import ValidationError

from src.integrations.exceptions import CipherConfigurationError, CredentialCorrupt
from src.integrations.models import CredentialBundle
from src.utils.config import get_credential_encryption_keys
from src.utils.logging import get_logger

logger = get_logger(__name__)


class CredentialCipher:
    """Authenticated encrypt/decrypt of CredentialBundle <-> opaque blob."""

    def __init__(self, keys: Sequence[str]):
        if not keys:
            raise CipherConfigurationError(
                "CREDENTIAL_ENCRYPTION_KEYS is required; refusing to store credentials unencrypted"
            )
        try:
            fernets = [Fernet(key.encode() if isinstance(key, str) else key) for key in keys]
        except (ValueError, TypeError) as e:
            raise CipherConfigurationError(f"Invalid credential encryption key: {e}") from e

        self._fernet = MultiFernet(fernets)
        self.key_count = len(fernets)

    @classmethod
    def from_config(cls) -> "CredentialCipher":
        return cls(get_credential_encryption_keys())

    def encrypt(self, bundle: CredentialBundle) -> str:
        return self._fernet.encrypt(bundle.model_dump_json().encode()).decode()

    def decrypt(self, blob: str) -> CredentialBundle:
        """Decrypt a stored blob.

        Raises:
            CredentialCorrupt: tampered or truncated blob, unknown key, or undecodable payload
        """
        try:
            plaintext = self._fernet.decrypt(blob.encode())
        except (InvalidToken, AttributeError) as e:
            raise CredentialCorrupt("Credential blob failed integrity check") from e

        try:
            return CredentialBundle.model_validate_json(plaintext)
        except ValidationError as e:
            raise CredentialCorrupt("Credential blob did not contain a credential bundle") from e

    def rotate(self, blob: str) -> str:
        """Re-encrypt a blob under the primary key."""
        try:
            return self._fernet.rotate(blob.encode()).decode()
        except (InvalidToken, AttributeError) as e:
            raise CredentialCorrupt("Credential blob failed integrity check") from e

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()


_cipher: CredentialCipher | None = None


def get_credential_cipher() -> CredentialCipher:
    """Process-wide cipher built from configuration."""
    global _cipher
    if _cipher is None:
        _cipher = CredentialCipher.from_config()
        logger.info(f"Credential cipher ready with {_cipher.key_count} key(s)")
    return _cipher
