"""
Credential key rotation.

Re-encrypts every stored credential blob under the primary CREDENTIAL_ENCRYPTION_KEYS key, so an
old key can be dropped from the list once a run has completed with no failures. Blobs that no
configured key can read are counted and left as they are.
"""

from __future__ import annotations

from src.cron import cron
from src.integrations.models import Provider
from src.integrations.services import get_services
from src.utils.error_handling import ErrorCounter, record_exception_and_ignore
from src.utils.logging import get_logger

logger = get_logger(__name__)


@cron(id="credential_rotation", crontab="30 3 * * *", tags=["maintenance"])
async def credential_rotation() -> None:
    services = get_services()
    counter: ErrorCounter = {}
    rotated = 0

    for provider in Provider:
        for installation in await services.installations.list_all(provider):
            with record_exception_and_ignore(
                logger,
                f"Failed to rotate credentials for {installation.tenant_id}/{provider.value}",
                counter,
            ):
                if await services.installations.rewrap_credentials(
                    installation.tenant_id, provider, services.cipher.rotate
                ):
                    rotated += 1

    logger.info(
        "Credential rotation complete",
        rotated=rotated,
        failed=counter.get("failed", 0),
        key_count=services.cipher.key_count,
    )
