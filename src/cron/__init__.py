"""Cron services"""

from .decorators import cron
from .loader import discover_and_register_jobs
from .scheduler import setup_scheduler

__all__ = ["cron", "setup_scheduler", "discover_and_register_jobs"]
