from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from src.utils.config import get_config_list, get_config_value_str, get_scheduler_enabled
from src.utils.logging import get_logger

logger = get_logger(__name__)

CronFunc = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class CronJobDef:
    id: str
    func: CronFunc
    crontab: str | None = None  # e.g. "*/10 * * * *"
    name: str | None = None  # human-friendly display name
    tags: list[str] = field(default_factory=list)
    max_instances: int = 1
    misfire_grace_time: int = 300
    coalesce: bool = True
    enabled: bool = True  # env-gated at registration time


# Global in-process registry
CRON_REGISTRY: dict[str, CronJobDef] = {}


def should_run_this_pod() -> bool:
    """Gate all crons at the pod level (prevent duplicate firing across replicas)."""
    return get_scheduler_enabled()


def load_runtime_overrides() -> dict[str, str]:
    """
    Allow per-job schedule overrides without a deploy.
    Env: CRON_OVERRIDES_JSON='{"connection_state_sweep":"30 * * * *"}'
    """
    raw = (get_config_value_str("CRON_OVERRIDES_JSON") or "").strip()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning("Ignoring CRON_OVERRIDES_JSON: not valid JSON")
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring CRON_OVERRIDES_JSON: expected an object")
        return {}
    return {str(k): str(v) for k, v in data.items()}


def filter_jobs_by_tags(jobs: dict[str, CronJobDef]) -> dict[str, CronJobDef]:
    """
    Run only jobs whose tags intersect CRON_TAGS (comma-separated).
    Leave CRON_TAGS unset to run all registered jobs for this pod.
    """
    wanted = set(get_config_list("CRON_TAGS"))
    if not wanted:
        return jobs
    return {jid: j for jid, j in jobs.items() if any(t in wanted for t in j.tags)}
