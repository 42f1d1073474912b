"""Layer 3 — supervised loopback analysis process.

The bridge owns one ``ServiceHandle`` and moves it through:

    Stopped ──first use──▶ Starting ──health 200──▶ Healthy
    Starting ──no health within startup_timeout──▶ Stopped
    Starting ──health 500 (engine failed to load)──▶ Stopped
    Healthy ──request timeout / transport error──▶ Unhealthy
    Unhealthy ──health 200──▶ Healthy
    any ──max_failures consecutive failures──▶ Stopped (for the session)

Starts are coalesced: concurrent callers share one in-flight start task,
which is shielded so a caller's deadline never aborts a spawn half-way.
Failed starts back off exponentially.  There is no background polling;
health is checked lazily before use after a failure.
"""

from __future__ import annotations
import asyncio
import atexit
import contextlib
import logging
import os
import re
import signal
import sys
import time
import weakref
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

import httpx

from .errors import EngineUnavailable, LayerTimeout
from .types import EntityType, PIIEntity, SourceEngine

logger = logging.getLogger(__name__)

# Presidio entity type → our entity type
PRESIDIO_TYPE_MAP: dict[str, str] = {
    "PERSON": EntityType.PERSON.value,
    "ORGANIZATION": EntityType.ORGANIZATION.value,
    "LOCATION": EntityType.LOCATION.value,
    "EMAIL_ADDRESS": EntityType.EMAIL.value,
    "PHONE_NUMBER": EntityType.PHONE.value,
    "US_SSN": EntityType.SSN.value,
    "CREDIT_CARD": EntityType.CREDIT_CARD.value,
    "IP_ADDRESS": EntityType.IP_ADDRESS.value,
    "DATE_TIME": EntityType.DATE.value,
}
_REVERSE_TYPE_MAP = {v: k for k, v in PRESIDIO_TYPE_MAP.items()}

_READY_RE = re.compile(r"listening on (http://127\.0\.0\.1:(\d+))")


class ServiceState(str, Enum):
    STOPPED = "Stopped"
    STARTING = "Starting"
    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"


class AnalysisProcess(Protocol):
    """The subset of ``asyncio.subprocess.Process`` the bridge relies on."""
    pid: int
    returncode: int | None

    def terminate(self) -> None: ...
    def kill(self) -> None: ...
    async def wait(self) -> int: ...


Launcher = Callable[[str, str], Awaitable[tuple[AnalysisProcess, str]]]


@dataclass
class ServiceHandle:
    state: ServiceState = ServiceState.STOPPED
    endpoint: str | None = None
    consecutive_failures: int = 0
    profile: str | None = None
    process: AnalysisProcess | None = None
    last_failure_at: float | None = None


_drain_tasks: set[asyncio.Task[None]] = set()


async def _drain(stream: asyncio.StreamReader) -> None:
    while line := await stream.readline():
        logger.debug("analysis service: %s", line.decode(errors="replace").rstrip())


async def spawn_analysis_process(
    profile: str,
    language: str,
    *,
    announce_timeout: float = 10.0,
) -> tuple[AnalysisProcess, str]:
    """Start ``python -m pii_sentinel.server`` and wait for its port announcement."""
    proc = await asyncio.create_subprocess_exec(
        sys.executable, "-m", "pii_sentinel.server",
        "--port", "0",
        "--profile", profile,
        "--language", language,
        "--parent-pid", str(os.getpid()),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
    )
    assert proc.stdout is not None
    # The child must not outlive a failed or cancelled announcement wait.
    try:
        try:
            line = await asyncio.wait_for(proc.stdout.readline(), announce_timeout)
        except asyncio.TimeoutError:
            raise EngineUnavailable("external", "analysis process never announced its port")
        match = _READY_RE.search(line.decode(errors="replace"))
        if match is None:
            raise EngineUnavailable(
                "external", f"analysis process exited early (code {proc.returncode})",
            )
    except BaseException:
        _kill_quietly(proc)
        raise

    drain = asyncio.create_task(_drain(proc.stdout))
    _drain_tasks.add(drain)
    drain.add_done_callback(_drain_tasks.discard)
    return proc, match.group(1)


def _kill_quietly(proc: AnalysisProcess) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except (ProcessLookupError, RuntimeError, OSError):
        # event loop already gone; fall back to the raw pid
        with contextlib.suppress(ProcessLookupError, OSError):
            os.kill(proc.pid, signal.SIGKILL)


_live_bridges: weakref.WeakSet[AnalysisBridge] = weakref.WeakSet()


@atexit.register
def _kill_orphans() -> None:
    for bridge in list(_live_bridges):
        process = bridge.handle.process
        if process is not None:
            _kill_quietly(process)


class AnalysisBridge:
    """Client and supervisor for the loopback analysis process."""

    name = "external"

    def __init__(
        self,
        *,
        language: str = "en",
        startup_timeout: float = 10.0,
        request_timeout: float = 15.0,
        health_timeout: float = 2.0,
        poll_interval: float = 0.25,
        stop_timeout: float = 3.0,
        max_failures: int = 3,
        backoff_base: float = 1.0,
        launcher: Launcher | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.language = language
        self.startup_timeout = startup_timeout
        self.request_timeout = request_timeout
        self.health_timeout = health_timeout
        self.poll_interval = poll_interval
        self.stop_timeout = stop_timeout
        self.max_failures = max_failures
        self.backoff_base = backoff_base
        self._launcher = launcher or self._default_launcher
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._lock = asyncio.Lock()
        self._start_task: asyncio.Task[None] | None = None
        self._given_up = False
        self.handle = ServiceHandle()
        _live_bridges.add(self)

    async def _default_launcher(self, profile: str, language: str) -> tuple[AnalysisProcess, str]:
        return await spawn_analysis_process(profile, language, announce_timeout=self.startup_timeout)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def state(self) -> ServiceState:
        return self.handle.state

    @property
    def available(self) -> bool:
        return self.handle.state is ServiceState.HEALTHY and not self._given_up

    @property
    def given_up(self) -> bool:
        return self._given_up

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def ensure_running(self, profile: str = "lite") -> None:
        """Make the service Healthy or raise EngineUnavailable."""
        async with self._lock:
            task = self._start_task
            if task is None or task.done():
                self._start_task = None
                if not await self._ready_without_start(profile):
                    task = self._start_task = asyncio.create_task(self._start(profile))
                    task.add_done_callback(_consume_exception)
                else:
                    return
        await asyncio.shield(task)

    async def _ready_without_start(self, profile: str) -> bool:
        """Decide under the lock whether a (re)start is needed."""
        h = self.handle
        if self._given_up:
            raise EngineUnavailable(
                self.name, f"gave up after {self.max_failures} consecutive failures",
            )

        if h.process is not None and h.process.returncode is not None:
            code = h.process.returncode
            await self._stop_process()
            self._register_failure(f"process exited unexpectedly (code {code})")
            if self._given_up:
                raise EngineUnavailable(self.name, "process keeps exiting")

        if h.state in (ServiceState.HEALTHY, ServiceState.UNHEALTHY) and h.profile != profile:
            logger.info("Switching analysis service profile %s → %s", h.profile, profile)
            await self._stop_process()

        if h.state is ServiceState.HEALTHY:
            return True
        if h.state is ServiceState.UNHEALTHY:
            status = await self._health_status()
            if status == 200:
                h.state = ServiceState.HEALTHY
                logger.info("Analysis service recovered at %s", h.endpoint)
                return True
            await self._record_failure("health check failed")
            raise EngineUnavailable(self.name, "service unhealthy")

        self._check_backoff()
        return False

    def _check_backoff(self) -> None:
        h = self.handle
        if not h.consecutive_failures or h.last_failure_at is None:
            return
        delay = self.backoff_base * 2 ** (h.consecutive_failures - 1)
        remaining = h.last_failure_at + delay - time.monotonic()
        if remaining > 0:
            raise EngineUnavailable(self.name, f"restart backoff, retry in {remaining:.1f}s")

    async def _start(self, profile: str) -> None:
        h = self.handle
        h.state = ServiceState.STARTING
        h.profile = profile
        logger.info("Starting analysis service (profile=%s)...", profile)
        deadline = time.monotonic() + self.startup_timeout

        try:
            process, endpoint = await asyncio.wait_for(
                self._launcher(profile, self.language),
                self.startup_timeout + self.stop_timeout,
            )
        except (asyncio.TimeoutError, EngineUnavailable, OSError, ValueError) as e:
            reason = str(e) or type(e).__name__
            await self._fail_start(reason)
            raise EngineUnavailable(self.name, f"failed to start: {reason}") from e

        h.process = process
        h.endpoint = endpoint
        self._client = httpx.AsyncClient(
            base_url=endpoint, transport=self._transport, timeout=self.request_timeout,
        )

        while True:
            if process.returncode is not None:
                reason = f"process exited with code {process.returncode} during startup"
                await self._fail_start(reason)
                raise EngineUnavailable(self.name, reason)
            status = await self._health_status()
            if status == 200:
                h.state = ServiceState.HEALTHY
                h.consecutive_failures = 0
                h.last_failure_at = None
                logger.info("Analysis service healthy at %s (pid %s)", endpoint, process.pid)
                return
            if status == 500:
                reason = "engine failed to load"
                await self._fail_start(reason)
                raise EngineUnavailable(self.name, reason)
            if time.monotonic() >= deadline:
                reason = f"not healthy within {self.startup_timeout:.1f}s"
                await self._fail_start(reason)
                raise EngineUnavailable(self.name, reason)
            await asyncio.sleep(self.poll_interval)

    async def _fail_start(self, reason: str) -> None:
        await self._stop_process()
        logger.warning("Analysis service failed to start: %s", reason)
        self._register_failure(reason)

    async def _health_status(self) -> int | None:
        """Status code of ``GET /health``, or None when the service cannot be reached."""
        if self._client is None:
            return None
        try:
            response = await self._client.get("/health", timeout=self.health_timeout)
        except httpx.HTTPError as e:
            logger.debug("Health check failed: %s", e)
            return None
        return response.status_code

    def _register_failure(self, reason: str) -> None:
        h = self.handle
        h.consecutive_failures += 1
        h.last_failure_at = time.monotonic()
        if h.consecutive_failures >= self.max_failures:
            self._given_up = True
            h.state = ServiceState.STOPPED
            logger.warning(
                "Analysis service disabled for this session after %d consecutive failures "
                "(last: %s)", h.consecutive_failures, reason,
            )
        elif h.state in (ServiceState.HEALTHY, ServiceState.UNHEALTHY):
            h.state = ServiceState.UNHEALTHY
            logger.warning(
                "Analysis service unhealthy (%d/%d): %s",
                h.consecutive_failures, self.max_failures, reason,
            )

    async def _record_failure(self, reason: str) -> None:
        """Count a failure of a running service; stop it once we give up."""
        self._register_failure(reason)
        if self._given_up:
            await self._stop_process()

    async def _stop_process(self) -> None:
        h = self.handle
        client, self._client = self._client, None
        process, h.process = h.process, None
        h.endpoint = None
        h.state = ServiceState.STOPPED

        if client is not None:
            if process is not None and process.returncode is None:
                with contextlib.suppress(httpx.HTTPError):
                    await client.post("/shutdown", timeout=self.health_timeout)
            await client.aclose()

        if process is None or process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), self.stop_timeout)
        except asyncio.TimeoutError:
            logger.warning("Analysis service (pid %s) ignored terminate; killing.", process.pid)
            _kill_quietly(process)
            await process.wait()

    async def aclose(self) -> None:
        """Terminate the process and reset the handle (explicit disable or exit)."""
        async with self._lock:
            task, self._start_task = self._start_task, None
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError, EngineUnavailable):
                    await task
            await self._stop_process()
            self.handle = ServiceHandle()
            self._given_up = False

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def analyze(
        self,
        text: str,
        language: str | None = None,
        entity_filter: list[str] | None = None,
        score_threshold: float = 0.0,
        *,
        profile: str = "lite",
    ) -> list[PIIEntity]:
        """POST /analyze.  Raises EngineUnavailable / LayerTimeout on failure."""
        await self.ensure_running(profile)
        client = self._client
        if client is None:
            raise EngineUnavailable(self.name, "service stopped")

        payload: dict[str, Any] = {
            "text": text,
            "language": language or self.language,
            "entities": [_REVERSE_TYPE_MAP.get(t, t) for t in entity_filter or ()],
            "score_threshold": score_threshold,
        }
        try:
            response = await client.post("/analyze", json=payload, timeout=self.request_timeout)
        except httpx.TimeoutException as e:
            await self._record_failure("request timed out")
            raise LayerTimeout(self.name, self.request_timeout) from e
        except httpx.TransportError as e:
            await self._record_failure(f"transport error: {e}")
            raise EngineUnavailable(self.name, f"transport error: {e}") from e

        if response.status_code != 200:
            reason = f"HTTP {response.status_code}: {response.text[:200]}"
            await self._record_failure(reason)
            raise EngineUnavailable(self.name, reason)

        try:
            entities = self._parse(text, response.json())
        except (ValueError, KeyError, TypeError) as e:
            await self._record_failure(f"malformed response: {e}")
            raise EngineUnavailable(self.name, f"malformed response: {e}") from e

        self.handle.consecutive_failures = 0
        self.handle.last_failure_at = None
        return entities

    @staticmethod
    def _parse(text: str, data: dict[str, Any]) -> list[PIIEntity]:
        entities: list[PIIEntity] = []
        for item in data["entities"]:
            start, end = int(item["start"]), int(item["end"])
            raw_type = str(item["type"])
            entities.append(PIIEntity(
                entity_type=PRESIDIO_TYPE_MAP.get(raw_type, raw_type),
                text=item.get("text", text[start:end]),
                start=start,
                end=end,
                confidence=min(1.0, max(0.0, float(item["score"]))),
                source_engine=SourceEngine.EXTERNAL_NER.value,
                metadata={"presidio_type": raw_type},
            ))
        return entities


def _consume_exception(task: asyncio.Task[Any]) -> None:
    if not task.cancelled():
        task.exception()
