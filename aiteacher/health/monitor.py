"""
Availability monitoring for the generation service.

A probe answers `{status, deepSeekConfigured}`; the monitor retries with
exponential backoff and publishes the classification to a HealthTracker.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional

import httpx

from aiteacher.llm.gateway import LanguageModelGateway
from aiteacher.shared.exceptions import HealthCheckError
from aiteacher.shared.logging import get_logger, log_with_context

logger = get_logger(__name__)


class HealthStatus(str, Enum):
    CHECKING = "checking"
    AVAILABLE = "available"
    PARTIAL = "partial"
    UNAVAILABLE = "unavailable"
    ERROR = "error"


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    configured: bool


Probe = Callable[[], Awaitable[ProbeResult]]
Listener = Callable[[HealthStatus], None]


class HealthTracker:
    """Last-write-wins holder of the current status, with subscribers."""

    def __init__(self, initial: HealthStatus = HealthStatus.CHECKING):
        self._status = initial
        self._listeners: List[Listener] = []

    def get(self) -> HealthStatus:
        return self._status

    def set(self, status: HealthStatus):
        previous, self._status = self._status, status
        if previous == status:
            return
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception as e:
                logger.error("Health listener failed: %s", e)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns the matching unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe


class HealthMonitor:
    """Runs probes with retry and classifies the generation service."""

    def __init__(
        self,
        probe: Probe,
        tracker: Optional[HealthTracker] = None,
        max_retries: int = 2,
        retry_delay: float = 1.5,
        interval: float = 30.0,
        recent_success_window: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.probe = probe
        self.tracker = tracker or HealthTracker()
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.interval = interval
        self.recent_success_window = recent_success_window
        self.clock = clock
        self.sleep = sleep
        self.last_success: Optional[float] = None
        self._in_flight: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def status(self) -> HealthStatus:
        return self.tracker.get()

    async def check_health(self) -> HealthStatus:
        """Run one full retry sequence; concurrent callers share the in-flight check."""
        if self._in_flight is None or self._in_flight.done():
            self._in_flight = asyncio.create_task(self._check())
        return await asyncio.shield(self._in_flight)

    async def _check(self) -> HealthStatus:
        self.tracker.set(HealthStatus.CHECKING)
        attempts = self.max_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                result = await self.probe()
                if not isinstance(result, ProbeResult):
                    raise HealthCheckError(f"Malformed probe result: {result!r}")
                if not result.ok:
                    raise HealthCheckError("Probe reported a non-ok status")
            except Exception as e:
                logger.warning("Health probe attempt %d/%d failed: %s", attempt, attempts, e)
                if attempt < attempts:
                    await self.sleep(self.retry_delay * 2 ** (attempt - 1))
                continue

            self.last_success = self.clock()
            status = HealthStatus.AVAILABLE if result.configured else HealthStatus.PARTIAL
            self._publish(status)
            return status

        recent = (
            self.last_success is not None
            and self.clock() - self.last_success < self.recent_success_window
        )
        status = HealthStatus.PARTIAL if recent else HealthStatus.UNAVAILABLE
        self._publish(status)
        return status

    def _publish(self, status: HealthStatus):
        log_with_context(
            logger, logging.INFO, f"Generation service status: {status.value}",
            action="health_status", status=status.value,
        )
        self.tracker.set(status)

    def start_monitoring(self) -> Callable[[], None]:
        """Check now and then every `interval` seconds; returns a cancel callable."""
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._monitor_loop())

        task = self._loop_task

        def cancel():
            task.cancel()

        return cancel

    async def _monitor_loop(self):
        while True:
            try:
                await self.check_health()
            except Exception as e:
                logger.error("Health check crashed: %s", e)
                self.tracker.set(HealthStatus.ERROR)
            await self.sleep(self.interval)

    async def stop(self):
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
        if self._in_flight is not None and not self._in_flight.done():
            self._in_flight.cancel()
            await asyncio.gather(self._in_flight, return_exceptions=True)


def http_probe(
    base_url: str,
    timeout: float = 5.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Probe:
    """Probe a running AI Teacher service through its /health endpoint."""

    async def probe() -> ProbeResult:
        async with httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport) as client:
            response = await client.get("/health")
            response.raise_for_status()
            data = response.json()
        if not isinstance(data, dict) or "status" not in data:
            raise HealthCheckError(f"Unexpected health payload: {data!r}")
        return ProbeResult(
            ok=data["status"] == "ok",
            configured=bool(data.get("deepSeekConfigured", False)),
        )

    return probe


def gateway_probe(gateway: LanguageModelGateway) -> Probe:
    """Probe the generation service directly; an unconfigured gateway is ok but partial."""

    async def probe() -> ProbeResult:
        if not gateway.is_configured():
            return ProbeResult(ok=True, configured=False)
        reachable = await gateway.ping()
        return ProbeResult(ok=True, configured=reachable)

    return probe
