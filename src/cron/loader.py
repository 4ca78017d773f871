from __future__ import annotations

import importlib
import pkgutil

from src.utils.logging import get_logger

logger = get_logger(__name__)


def discover_and_register_jobs(package: str = "src.cron.jobs") -> list[str]:
    """
    Import every module in `package` so their @cron decorators register jobs in the global
    registry. Importing is idempotent, so calling this twice registers nothing new.
    """
    pkg = importlib.import_module(package)
    modules = [
        modname
        for _, modname, ispkg in pkgutil.iter_modules(pkg.__path__, pkg.__name__ + ".")
        if not ispkg
    ]
    for modname in modules:
        importlib.import_module(modname)
    logger.debug(f"Loaded {len(modules)} cron job module(s)")
    return modules
