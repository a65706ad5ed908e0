"""Source health probes, success-rate tracking and the circuit breaker."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Iterable, Sequence

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Source, SourceHealth, utcnow

from .config import CollectorConfig, RetryConfig
from .http_client import HttpFetchError, HttpFetcher

LOGGER = logging.getLogger(__name__)

CIRCUIT_CLOSED = "closed"
CIRCUIT_OPEN = "open"
CIRCUIT_HALF_OPEN = "half_open"

STATUS_HEALTHY = "healthy"
STATUS_SLOW = "slow"
STATUS_ERROR = "error"
STATUS_TIMEOUT = "timeout"
STATUS_UNKNOWN = "unknown"


@dataclass(slots=True)
class HealthResult:
    healthy: bool
    status: str
    # None when the outcome comes from a collection pass rather than a probe.
    latency_ms: int | None = None
    error: str | None = None


def admit(circuit_state: str | None) -> tuple[bool, str]:
    """Decide whether a source takes part in a pass; returns (admitted, next state).

    An open circuit sits out one pass and becomes half-open; a half-open
    circuit is admitted as a trial run.
    """

    state = circuit_state or CIRCUIT_CLOSED
    if state == CIRCUIT_OPEN:
        return False, CIRCUIT_HALF_OPEN
    return True, state


def _ewma(previous: float, sample: float, alpha: float, *, seeded: bool) -> float:
    if not seeded:
        return sample
    return (1 - alpha) * previous + alpha * sample


class HealthMonitor:
    """Probes sources and keeps their ``source_health`` rows current."""

    def __init__(
        self,
        session_factory,
        config: CollectorConfig,
        *,
        fetcher: HttpFetcher | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._config = config
        self._fetcher = fetcher or HttpFetcher(
            config,
            timeout=config.timeout.probe_timeout,
            retry=RetryConfig(max_attempts=1),
            transport=transport,
        )

    def probe(self, source: Source) -> HealthResult:
        started = time.perf_counter()
        try:
            self._fetcher.get_text(source.base_url)
        except HttpFetchError as exc:
            latency_ms = int((time.perf_counter() - started) * 1000)
            status = STATUS_TIMEOUT if exc.kind == "timeout" else STATUS_ERROR
            return HealthResult(healthy=False, status=status, latency_ms=latency_ms, error=str(exc))

        latency_ms = int((time.perf_counter() - started) * 1000)
        if latency_ms > self._config.health.slow_threshold * 1000:
            return HealthResult(healthy=True, status=STATUS_SLOW, latency_ms=latency_ms)
        return HealthResult(healthy=True, status=STATUS_HEALTHY, latency_ms=latency_ms)

    def record_result(self, source_id: int, result: HealthResult, *, session: Session | None = None) -> SourceHealth:
        """Fold one outcome into the source's health row and circuit."""

        if session is not None:
            return self._record(session, source_id, result)
        with self._session_factory() as own_session:
            health = self._record(own_session, source_id, result)
            own_session.commit()
            own_session.refresh(health)
            own_session.expunge(health)
            return health

    def _record(self, session: Session, source_id: int, result: HealthResult) -> SourceHealth:
        settings = self._config.health
        health = session.get(SourceHealth, source_id)
        if health is None:
            health = SourceHealth(
                source_id=source_id,
                status=STATUS_UNKNOWN,
                latency_ms=0,
                avg_latency_ms=0,
                success_rate=0.0,
                total_checks=0,
                consecutive_failures=0,
                circuit_state=CIRCUIT_CLOSED,
            )
            session.add(health)

        now = utcnow()
        seeded = (health.total_checks or 0) > 0
        health.success_rate = round(
            _ewma(
                health.success_rate or 0.0,
                100.0 if result.healthy else 0.0,
                settings.success_rate_alpha,
                seeded=seeded,
            ),
            2,
        )
        if result.latency_ms is not None:
            health.latency_ms = result.latency_ms
            health.avg_latency_ms = int(
                _ewma(
                    float(health.avg_latency_ms or 0),
                    float(result.latency_ms),
                    settings.success_rate_alpha,
                    seeded=seeded and bool(health.avg_latency_ms),
                )
            )
            health.last_probe_at = now
        health.total_checks = (health.total_checks or 0) + 1

        previous_state = health.circuit_state or CIRCUIT_CLOSED
        if result.healthy:
            health.consecutive_failures = 0
            health.status = result.status
            if previous_state == CIRCUIT_HALF_OPEN:
                health.circuit_state = CIRCUIT_CLOSED
        else:
            health.consecutive_failures = (health.consecutive_failures or 0) + 1
            health.last_error = result.error
            health.last_error_at = now
            health.status = result.status
            if health.consecutive_failures >= settings.max_consecutive_failures:
                health.status = STATUS_ERROR
            if previous_state == CIRCUIT_HALF_OPEN:
                health.circuit_state = CIRCUIT_OPEN
            elif (
                previous_state == CIRCUIT_CLOSED
                and health.consecutive_failures >= settings.max_consecutive_failures
            ):
                health.circuit_state = CIRCUIT_OPEN

        if health.circuit_state != previous_state:
            LOGGER.info(
                "Circuit for source %s moved %s -> %s",
                source_id,
                previous_state,
                health.circuit_state,
            )
        health.updated_at = now
        session.flush()
        return health

    def eligible_sources(self, sources: Sequence[Source]) -> list[Source]:
        """Apply the circuit breaker at pass start; keeps the given order."""

        if not sources:
            return []
        admitted: list[Source] = []
        with self._session_factory() as session:
            rows = {
                row.source_id: row
                for row in session.scalars(
                    select(SourceHealth).where(SourceHealth.source_id.in_([source.id for source in sources]))
                )
            }
            for source in sources:
                row = rows.get(source.id)
                allowed, next_state = admit(row.circuit_state if row else None)
                if row is not None and next_state != row.circuit_state:
                    row.circuit_state = next_state
                if allowed:
                    admitted.append(source)
                else:
                    LOGGER.warning("Skipping source %s this pass: circuit open", source.name)
            session.commit()
        return admitted

    def sweep(self, sources: Iterable[Source] | None = None) -> list[tuple[Source, HealthResult]]:
        """Probe every active source sequentially and record the outcomes."""

        if sources is None:
            with self._session_factory() as session:
                sources = list(
                    session.scalars(
                        select(Source)
                        .where(Source.is_active.is_(True))
                        .order_by(Source.weight.desc(), Source.id.asc())
                    )
                )
                session.expunge_all()

        results: list[tuple[Source, HealthResult]] = []
        for source in sources:
            result = self.probe(source)
            self.record_result(source.id, result)
            LOGGER.info(
                "Probed %s: %s (%s ms)%s",
                source.name,
                result.status,
                result.latency_ms,
                f" {result.error}" if result.error else "",
            )
            results.append((source, result))
        return results

    def get_source_health(self) -> list[dict]:
        """One summary per active source; sources never probed read as unknown."""

        with self._session_factory() as session:
            rows = session.execute(
                select(Source, SourceHealth)
                .outerjoin(SourceHealth, SourceHealth.source_id == Source.id)
                .where(Source.is_active.is_(True))
                .order_by(Source.weight.desc(), Source.id.asc())
            ).all()
            summaries = []
            for source, health in rows:
                if health is None:
                    summaries.append(
                        {
                            "source_id": source.id,
                            "name": source.name,
                            "status": STATUS_UNKNOWN,
                            "latency_ms": None,
                            "avg_latency_ms": None,
                            "success_rate": None,
                            "consecutive_failures": 0,
                            "circuit_state": CIRCUIT_CLOSED,
                            "last_error": None,
                            "last_probe_at": None,
                        }
                    )
                    continue
                summaries.append(
                    {
                        "source_id": source.id,
                        "name": source.name,
                        "status": health.status,
                        "latency_ms": health.latency_ms,
                        "avg_latency_ms": health.avg_latency_ms,
                        "success_rate": health.success_rate,
                        "consecutive_failures": health.consecutive_failures,
                        "circuit_state": health.circuit_state,
                        "last_error": health.last_error,
                        "last_probe_at": health.last_probe_at.isoformat() if health.last_probe_at else None,
                    }
                )
        return summaries

    def close(self) -> None:
        self._fetcher.close()
