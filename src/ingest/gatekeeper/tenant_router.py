"""Resolve the tenant that owns an inbound webhook from the provider team id in its payload.

The team index gives an O(1) lookup. It is maintained on install and disconnect, but it is only a
cache of the installation records: an entry that is missing, or that no longer matches the
installation it points at, triggers a rebuild from a scan of installations. When nothing matches
the event is dropped. There is no default tenant.
"""

from src.database.installations import InstallationStore
from src.ingest.gatekeeper.models import RoutingResult
from src.integrations.models import Installation, Provider
from src.utils.logging import get_logger

logger = get_logger(__name__)


def pick_owner(candidates: list[Installation]) -> Installation:
    """Deterministic winner among installations claiming the same team: newest, then tenant id."""
    return max(candidates, key=lambda i: (i.updated_at, i.tenant_id))


class WebhookTenantRouter:
    def __init__(self, installations: InstallationStore):
        self._installations = installations

    async def resolve(self, provider: Provider, team_id: str | None) -> RoutingResult:
        if not team_id:
            return RoutingResult(tenant_id=None, reason="missing_team_id")

        entry = await self._installations.get_team_index(provider, team_id)
        if entry is not None:
            installation = await self._installations.get_active(entry.tenant_id, provider)
            if (
                installation is not None
                and installation.provider_team_id == team_id
                and installation.updated_at == entry.updated_at
            ):
                return RoutingResult(tenant_id=entry.tenant_id, reason="index")
            logger.info(
                "Stale team index entry, rebuilding",
                provider=provider.value,
                team_id=team_id,
                tenant_id=entry.tenant_id,
            )

        return await self._rebuild_entry(provider, team_id)

    async def rebuild_index(self, provider: Provider) -> dict[str, str]:
        """Rewrite every team index entry for `provider` from the installation records.

        Returns:
            Mapping of team id to owning tenant id
        """
        by_team: dict[str, list[Installation]] = {}
        for installation in await self._installations.list_all(provider):
            if installation.is_active:
                by_team.setdefault(installation.provider_team_id, []).append(installation)

        owners: dict[str, str] = {}
        for team_id, candidates in by_team.items():
            owner = pick_owner(candidates)
            if len(candidates) > 1:
                self._log_conflict(provider, team_id, candidates, owner)
            await self._installations.set_team_index(owner)
            owners[team_id] = owner.tenant_id

        logger.info(f"Rebuilt {len(owners)} {provider.value} team index entries")
        return owners

    async def _rebuild_entry(self, provider: Provider, team_id: str) -> RoutingResult:
        candidates = await self._installations.list_active_by_team(provider, team_id)
        if not candidates:
            return RoutingResult(tenant_id=None, reason="no_active_installation")

        owner = pick_owner(candidates)
        conflicting: list[str] = []
        if len(candidates) > 1:
            conflicting = self._log_conflict(provider, team_id, candidates, owner)
        await self._installations.set_team_index(owner)
        return RoutingResult(
            tenant_id=owner.tenant_id, reason="rebuilt", conflicting_tenant_ids=conflicting
        )

    @staticmethod
    def _log_conflict(
        provider: Provider, team_id: str, candidates: list[Installation], owner: Installation
    ) -> list[str]:
        others = sorted(i.tenant_id for i in candidates if i.tenant_id != owner.tenant_id)
        logger.warning(
            f"{len(candidates)} tenants claim {provider.value} team {team_id}, routing to the newest",
            provider=provider.value,
            team_id=team_id,
            tenant_id=owner.tenant_id,
            conflicting_tenant_ids=others,
        )
        return others
