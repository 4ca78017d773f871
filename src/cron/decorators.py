from __future__ import annotations

from src.utils.config import get_config_value_str

from .registry import CRON_REGISTRY, CronFunc, CronJobDef


def cron(
    *,
    id: str,
    crontab: str | None = None,
    name: str | None = None,
    tags: list[str] | None = None,
    enabled_env: str | None = None,  # if set, job runs only when this env var == "1"
    max_instances: int = 1,
    misfire_grace_time: int = 300,
    coalesce: bool = True,
):
    """
    Decorator to register an async cron job.

    Example:
        @cron(id="connection_state_sweep", crontab="0 * * * *", tags=["maintenance"])
        async def connection_state_sweep(): ...
    """

    def _wrap(func: CronFunc) -> CronFunc:
        if id in CRON_REGISTRY:
            raise ValueError(f"Duplicate cron id: {id}")

        CRON_REGISTRY[id] = CronJobDef(
            id=id,
            func=func,
            crontab=crontab,
            name=name or id,
            tags=tags or [],
            max_instances=max_instances,
            misfire_grace_time=misfire_grace_time,
            coalesce=coalesce,
            enabled=get_config_value_str(enabled_env) == "1" if enabled_env else True,
        )
        return func

    return _wrap
