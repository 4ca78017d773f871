"""Channel scope filter applied to inbound events before normalization."""

from src.database.channel_scopes import ChannelScopeStore
from src.integrations.exceptions import ScopeRejected
from src.integrations.models import ChannelScope


def scope_allows(scope: ChannelScope | None, sub_resource_id: str) -> bool:
    """No scope or an empty selection allows everything; otherwise only listed ids pass."""
    if scope is None or not scope.selected_sub_resource_ids:
        return True
    return sub_resource_id in scope.selected_sub_resource_ids


class ChannelScopeFilter:
    def __init__(self, scopes: ChannelScopeStore):
        self._scopes = scopes

    async def is_allowed(self, tenant_id: str, sub_resource_id: str) -> bool:
        # Store failures propagate: an unreadable scope must not turn into allow-all
        return scope_allows(await self._scopes.get(tenant_id), sub_resource_id)

    async def check(self, tenant_id: str, sub_resource_id: str) -> None:
        if not await self.is_allowed(tenant_id, sub_resource_id):
            raise ScopeRejected(tenant_id, sub_resource_id)
