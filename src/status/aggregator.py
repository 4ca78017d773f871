"""Status aggregator: cache-first, then bounded parallel probes for every cache miss."""

import time
from collections.abc import Mapping, Sequence

from src.database.connection_state import ConnectionStateStore
from src.integrations.exceptions import ProbeFailure, ProbeTimeout
from src.integrations.models import (
    SourceStatus,
    SourceType,
    StatusReport,
    StatusSummary,
    StatusTiming,
)
from src.status.cache import StatusCache
from src.status.probes import ConnectionStateProbe, StatusProbe
from src.utils.config import get_status_probe_timeout
from src.utils.error_handling import ErrorCounter, record_exception_and_ignore
from src.utils.logging import get_logger
from src.utils.timeout import ProbeOutcome, run_bounded_probes

logger = get_logger(__name__)


class StatusAggregator:
    def __init__(
        self,
        probes: Mapping[SourceType, StatusProbe],
        cache: StatusCache,
        connection_state: ConnectionStateStore,
        probe_timeout: float | None = None,
    ):
        self._probes = dict(probes)
        self._cache = cache
        self._connection_state = connection_state
        self.probe_timeout = probe_timeout if probe_timeout is not None else get_status_probe_timeout()

    @property
    def sources(self) -> list[SourceType]:
        return list(self._probes)

    async def get_status(
        self, tenant_id: str, sources: Sequence[SourceType] | None = None
    ) -> StatusReport:
        """Status of every requested source for one tenant.

        Cached entries are served as-is. Misses are probed concurrently, each bounded by
        probe_timeout, and the call waits for all of them to settle: a hanging or failing upstream
        yields an "error" status for its own source only.
        """
        started = time.perf_counter()
        requested = list(dict.fromkeys(sources)) if sources else self.sources

        statuses: dict[SourceType, SourceStatus] = {}
        cached: list[SourceType] = []
        to_probe: dict[SourceType, StatusProbe] = {}
        for source in requested:
            probe = self._probes.get(source)
            if probe is None:
                statuses[source] = SourceStatus.errored(source, "no probe configured for source")
                continue
            hit = await self._cache.get(tenant_id, source)
            if hit is not None:
                statuses[source] = hit
                cached.append(source)
            else:
                to_probe[source] = probe

        if to_probe:
            outcomes = await run_bounded_probes(
                {source.value: self._probe_call(probe, tenant_id) for source, probe in to_probe.items()},
                timeout=self.probe_timeout,
            )
            for source in to_probe:
                status, is_failure = self._to_status(source, outcomes[source.value])
                statuses[source] = status
                await self._cache.put(tenant_id, source, status, is_failure=is_failure)
            await self._record_connection_state(tenant_id, to_probe, statuses)

        ordered = {source: statuses[source] for source in requested}
        report = StatusReport(
            tenant_id=tenant_id,
            from_cache=bool(requested) and len(cached) == len(requested),
            statuses=ordered,
            summary=StatusSummary(
                total=len(ordered),
                connected=sum(1 for s in ordered.values() if s.state == "connected"),
                disconnected=sum(1 for s in ordered.values() if s.state == "disconnected"),
                erroring=sum(1 for s in ordered.values() if s.state == "error"),
            ),
            timing=StatusTiming(
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
                checked_sources=list(to_probe),
                cached_sources=cached,
            ),
        )
        logger.info(
            "Status aggregated",
            tenant_id=tenant_id,
            connected=report.summary.connected,
            erroring=report.summary.erroring,
            cached=len(cached),
            duration_ms=report.timing.duration_ms,
        )
        return report

    async def invalidate(self, tenant_id: str, source: SourceType | None = None) -> list[SourceType]:
        return await self._cache.invalidate(tenant_id, source)

    @staticmethod
    def _probe_call(probe: StatusProbe, tenant_id: str):
        async def _call() -> SourceStatus:
            return await probe.probe(tenant_id)

        return _call

    def _to_status(
        self, source: SourceType, outcome: ProbeOutcome[SourceStatus]
    ) -> tuple[SourceStatus, bool]:
        """Map a settled probe to (status, is_failure)."""
        if outcome.ok and outcome.value is not None:
            return outcome.value, outcome.value.state == "error"

        if outcome.timed_out:
            failure: ProbeFailure = ProbeTimeout(source.value, self.probe_timeout)
        elif isinstance(outcome.error, ProbeFailure):
            failure = outcome.error
        else:
            logger.error(
                f"Unexpected error probing {source.value}: {outcome.error!r}", source=source.value
            )
            failure = ProbeFailure(source.value, f"unexpected error: {type(outcome.error).__name__}")
        return SourceStatus.errored(source, failure.reason), True

    async def _record_connection_state(
        self,
        tenant_id: str,
        probed: Mapping[SourceType, StatusProbe],
        statuses: Mapping[SourceType, SourceStatus],
    ) -> None:
        """Mirror definitive probe results into connection state. Errors are left alone."""
        counter: ErrorCounter = {}
        for source, probe in probed.items():
            # These probes read connection state; writing it back would only bump timestamps
            if isinstance(probe, ConnectionStateProbe):
                continue
            status = statuses[source]
            if status.state == "error":
                continue
            with record_exception_and_ignore(
                logger, f"Failed to record connection state for {source.value}", counter
            ):
                if status.connected:
                    await self._connection_state.mark_connected(tenant_id, source)
                else:
                    await self._connection_state.mark_disconnected(tenant_id, source)
