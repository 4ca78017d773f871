"""Webhook verification protocol and result types.

All tenants share one registered app per provider, so a webhook is verified against the app's
signing secret before the tenant is known. Verifiers fail closed: a missing secret is a failed
verification, unless validation is explicitly disabled for local development.
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from src.utils.config import get_webhook_validation_disabled
from src.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class VerificationResult:
    """Result of webhook verification."""

    success: bool
    error: str | None = None


class WebhookVerifier(Protocol):
    """Protocol for webhook verification handlers."""

    async def verify(self, headers: dict[str, str], body: bytes) -> VerificationResult:
        """Verify a webhook delivery.

        Args:
            headers: HTTP headers from the webhook request, lower-cased
            body: Raw request body as bytes

        Returns:
            VerificationResult indicating success or failure with error message
        """
        ...


# Type alias for verification functions
VerifyFunc = Callable[[dict[str, str], bytes, str], None]


class BaseSigningSecretVerifier:
    """Base class for verifiers that check an HMAC against the app's signing secret.

    Subclasses define:
    - source_type: provider name used in log lines
    - verify_func: performs the check and raises ValueError on failure
    - get_secret: returns the signing secret from configuration
    """

    source_type: str
    verify_func: VerifyFunc
    get_secret: Callable[[], str | None]

    def __init__(self, secret: str | None = None, validation_disabled: bool | None = None) -> None:
        self._secret = secret
        self._validation_disabled = (
            validation_disabled
            if validation_disabled is not None
            else get_webhook_validation_disabled()
        )

    async def verify(self, headers: dict[str, str], body: bytes) -> VerificationResult:
        if self._validation_disabled:
            logger.warning(f"Skipping {self.source_type} webhook verification (disabled)")
            return VerificationResult(success=True)

        signing_secret = self._secret or type(self).get_secret()
        if not signing_secret:
            return VerificationResult(
                success=False, error=f"No {self.source_type} signing secret configured"
            )

        try:
            self.verify_func(headers, body, signing_secret)
            return VerificationResult(success=True)
        except ValueError as e:
            return VerificationResult(success=False, error=str(e))
