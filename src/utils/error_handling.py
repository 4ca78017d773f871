"""Error handling utilities for per-item isolation and metrics."""

import logging
from collections.abc import Generator
from contextlib import contextmanager
from typing import TypedDict

import newrelic.agent
import structlog

# Support both standard Logger and structlog BoundLogger
LoggerType = logging.Logger | structlog.BoundLogger


class ErrorCounter(TypedDict, total=False):
    """Counter dict for tracking success/failure metrics."""

    successful: int
    failed: int


@contextmanager
def record_exception_and_ignore(
    logger: LoggerType, context: str, counter: ErrorCounter
) -> Generator[None]:
    """Run one unit of work so that its failure never aborts its siblings.

    On success: increments counter["successful"]
    On exception: logs, records to New Relic, increments counter["failed"] and continues

    Example:
        counter: ErrorCounter = {}
        for envelope in envelopes:
            with record_exception_and_ignore(logger, f"Failed to process event {event_id}", counter):
                await processor.process_envelope(envelope)
    """
    try:
        yield
        counter["successful"] = counter.get("successful", 0) + 1
    except Exception as e:
        logger.error(f"{context}: {e}")
        newrelic.agent.record_exception()
        counter["failed"] = counter.get("failed", 0) + 1
