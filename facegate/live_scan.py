"""
Live Scan

Repeatedly verifies freshly captured probe embeddings against one fixed
target embedding, stopping on the first match, on explicit stop, or when
the controller is closed. Used for attendance-style check-ins.

A scan is an asyncio task that ticks every ``1 / checks_per_second``
seconds. Each tick starts at most one comparison; a tick that finds the
previous comparison still running is dropped, never queued.
"""
import asyncio
import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

import numpy as np

from facegate.config import (
    DEFAULT_CHECKS_PER_SECOND,
    MAX_CHECKS_PER_SECOND,
    MAX_LIVE_SCANS
)
from facegate.errors import (
    CaptureUnavailable,
    DimensionMismatch,
    FaceGateError,
    InvalidTarget,
    MultipleFacesDetected,
    NoFaceDetected,
    NotFound,
    ScanLimitReached,
    TransientCaptureFailure,
    ValidationError
)
from facegate.similarity import EmbeddingLike, SimilarityEngine, check_threshold

logger = logging.getLogger(__name__)

# Failures that only cost the current tick
TICK_ERRORS = (
    TransientCaptureFailure,
    NoFaceDetected,
    MultipleFacesDetected,
    DimensionMismatch,
    ValidationError
)


class ScanState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    SUCCEEDED = "succeeded"


class ProbeSource:
    """Supplies one fresh probe embedding per call."""

    async def acquire(self) -> EmbeddingLike:
        raise NotImplementedError


class CaptureProbeSource(ProbeSource):
    """
    Pulls a frame from a capture callable and embeds it with the face model.

    ``capture_frame`` may raise TransientCaptureFailure (retried next tick)
    or CaptureUnavailable (ends the scan).
    """

    def __init__(self, capture_frame: Callable[[], Awaitable[bytes]], face_model):
        self._capture_frame = capture_frame
        self._face_model = face_model

    async def acquire(self) -> EmbeddingLike:
        image_bytes = await self._capture_frame()
        return await asyncio.to_thread(self._face_model.embed, image_bytes)


class FrameBufferProbeSource(ProbeSource):
    """
    Single-slot buffer fed by pushed frames (e.g. from an HTTP client).

    Only the most recent frame is kept and each frame is used at most once.
    """

    def __init__(self, face_model):
        self._face_model = face_model
        self._frame: Optional[bytes] = None
        self.frames_received = 0

    def push(self, image_bytes: bytes) -> None:
        if not image_bytes:
            raise ValidationError("Empty frame")
        self._frame = image_bytes
        self.frames_received += 1

    async def acquire(self) -> EmbeddingLike:
        frame, self._frame = self._frame, None
        if frame is None:
            raise TransientCaptureFailure("No new frame available")
        return await asyncio.to_thread(self._face_model.embed, frame)


class LiveScanController:
    """
    Drives the live scan state machine.

    States:
    - idle -> scanning on start()
    - scanning -> succeeded on the first verified comparison
    - scanning -> idle on stop()/cancel(), a fatal capture error, or aclose()
    - succeeded -> idle on reset()

    Results of comparisons that finish after the scan was stopped are
    discarded. Must be used from within a running event loop.
    """

    def __init__(
        self,
        probe_source: ProbeSource,
        engine: SimilarityEngine,
        on_fatal: Optional[Callable[["LiveScanController", FaceGateError], None]] = None
    ):
        self._source = probe_source
        self._engine = engine
        self._on_fatal = on_fatal

        self._state = ScanState.IDLE
        self._target: Optional[np.ndarray] = None
        self._threshold = engine.threshold
        self._checks_per_second: Optional[float] = None

        self._ticker: Optional[asyncio.Task] = None
        self._in_flight: Optional[asyncio.Task] = None
        # Bumped on every start/stop so late results can tell they are stale
        self._generation = 0
        self._settled = asyncio.Event()
        self._settled.set()

        self.last_similarity: Optional[float] = None
        self.last_error: Optional[Exception] = None
        self.fatal_error: Optional[FaceGateError] = None
        self.ticks_completed = 0
        self.ticks_skipped = 0
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None

    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def threshold(self) -> float:
        return self._threshold

    @property
    def checks_per_second(self) -> Optional[float]:
        return self._checks_per_second

    @property
    def comparison_in_flight(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    def start(
        self,
        target: EmbeddingLike,
        threshold: Optional[float] = None,
        checks_per_second: float = DEFAULT_CHECKS_PER_SECOND
    ) -> None:
        """
        Begin scanning against ``target``.

        Raises:
            InvalidTarget: Target is not a valid, non-zero embedding of length D
            ValidationError: Bad threshold or rate, or a scan is already running
        """
        if self._state is ScanState.SCANNING:
            raise ValidationError("Live scan is already running")

        try:
            target = self._engine.validate(target)
        except (DimensionMismatch, ValidationError) as e:
            raise InvalidTarget(f"Invalid target embedding: {e.message}") from e
        if not np.any(target):
            raise InvalidTarget("Target embedding must not be all zeros")

        threshold = self._engine.threshold if threshold is None else check_threshold(threshold)

        try:
            checks_per_second = float(checks_per_second)
        except (TypeError, ValueError):
            raise ValidationError(f"checks_per_second must be a number, got {checks_per_second!r}")
        if not math.isfinite(checks_per_second) or checks_per_second <= 0:
            raise ValidationError(f"checks_per_second must be positive, got {checks_per_second}")

        loop = asyncio.get_running_loop()

        self._generation += 1
        self._target = target
        self._threshold = threshold
        self._checks_per_second = checks_per_second
        self.last_similarity = None
        self.last_error = None
        self.fatal_error = None
        self.ticks_completed = 0
        self.ticks_skipped = 0
        self.started_at = datetime.now(timezone.utc)
        self.finished_at = None

        self._state = ScanState.SCANNING
        self._settled.clear()
        self._ticker = loop.create_task(self._run(self._generation, 1.0 / checks_per_second))

        logger.info(
            f"Live scan started (threshold: {threshold:.2f}, "
            f"{checks_per_second:.2f} checks/s)"
        )

    def restart(self) -> None:
        """Start again with the previous target and settings."""
        if self._target is None:
            raise ValidationError("Live scan has never been started")
        if self._state is ScanState.SCANNING:
            self._halt(ScanState.IDLE)
        self.reset()
        self.start(self._target, self._threshold, self._checks_per_second)

    def stop(self) -> bool:
        """
        Stop scanning immediately.

        An in-flight comparison keeps running but its result is ignored.

        Returns:
            True if a running scan was stopped
        """
        if self._state is not ScanState.SCANNING:
            return False
        self._halt(ScanState.IDLE)
        logger.info("Live scan stopped")
        return True

    def cancel(self) -> bool:
        """Same as stop()."""
        return self.stop()

    def reset(self) -> None:
        """Return a finished scan to idle."""
        if self._state is ScanState.SCANNING:
            raise ValidationError("Cannot reset a running live scan, stop it first")
        self._state = ScanState.IDLE
        self.last_similarity = None
        self.last_error = None
        self.fatal_error = None

    async def wait(self, timeout: Optional[float] = None) -> ScanState:
        """Wait until the scan is no longer running and return the state."""
        await asyncio.wait_for(self._settled.wait(), timeout)
        return self._state

    async def aclose(self) -> None:
        """Stop the scan and cancel any outstanding work."""
        ticker, in_flight = self._ticker, self._in_flight
        self.stop()

        pending = [t for t in (ticker, in_flight) if t is not None and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._in_flight = None

    async def __aenter__(self) -> "LiveScanController":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and self._state is ScanState.SCANNING

    async def _run(self, generation: int, interval: float):
        loop = asyncio.get_running_loop()
        next_tick = loop.time()

        while self._is_current(generation):
            self._tick(generation)
            # Drop missed ticks instead of bursting to catch up
            next_tick = max(next_tick + interval, loop.time())
            await asyncio.sleep(next_tick - loop.time())

    def _tick(self, generation: int):
        if self.comparison_in_flight:
            self.ticks_skipped += 1
            logger.debug("Live scan tick skipped, previous comparison still running")
            return

        self._in_flight = asyncio.get_running_loop().create_task(
            self._check(generation, self._target, self._threshold)
        )

    async def _check(self, generation: int, target: np.ndarray, threshold: float):
        try:
            probe = await self._source.acquire()
            comparison = self._engine.compare(target, probe, threshold=threshold)
        except CaptureUnavailable as e:
            if self._is_current(generation):
                self._fail(e)
            return
        except TICK_ERRORS as e:
            if self._is_current(generation):
                self.last_error = e
                logger.warning(f"Live scan tick failed ({e.kind}): {e.message}")
            return
        except Exception as e:
            if self._is_current(generation):
                self.last_error = e
                logger.exception(f"Live scan tick failed unexpectedly: {e}")
            return

        if not self._is_current(generation):
            logger.debug("Discarding live scan result from a stopped scan")
            return

        self.last_similarity = comparison.similarity
        self.last_error = None
        self.ticks_completed += 1

        if comparison.verified:
            self._halt(ScanState.SUCCEEDED)
            logger.info(
                f"Live scan verified (similarity: {comparison.similarity:.2%}) "
                f"after {self.ticks_completed} checks"
            )

    def _halt(self, state: ScanState):
        # State change and timer cancellation happen in one step of the loop
        self._generation += 1
        self._state = state
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
        self.finished_at = datetime.now(timezone.utc)
        self._settled.set()

    def _fail(self, error: FaceGateError):
        self.fatal_error = error
        self._halt(ScanState.IDLE)
        logger.error(f"Live scan aborted ({error.kind}): {error.message}")
        if self._on_fatal is not None:
            self._on_fatal(self, error)

    def snapshot(self) -> dict:
        """Current observable state."""
        return {
            "state": self._state.value,
            "threshold": self._threshold,
            "checks_per_second": self._checks_per_second,
            "last_similarity": self.last_similarity,
            "last_error": _describe(self.last_error),
            "fatal_error": _describe(self.fatal_error),
            "ticks_completed": self.ticks_completed,
            "ticks_skipped": self.ticks_skipped,
            "comparison_in_flight": self.comparison_in_flight,
            "started_at": self.started_at,
            "finished_at": self.finished_at
        }


def _describe(error: Optional[Exception]) -> Optional[str]:
    if error is None:
        return None
    if isinstance(error, FaceGateError):
        return f"{error.kind}: {error.message}"
    return f"{error.__class__.__name__}: {error}"


@dataclass
class LiveScanSession:
    """A registered live scan fed by pushed frames."""
    scan_id: str
    label: str
    controller: LiveScanController
    source: FrameBufferProbeSource
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def snapshot(self) -> dict:
        return {
            "scan_id": self.scan_id,
            "label": self.label,
            "created_at": self.created_at,
            "frames_received": self.source.frames_received,
            **self.controller.snapshot()
        }


class LiveScanManager:
    """
    Registry of live scans keyed by id, capped at ``max_scans``.
    """

    def __init__(
        self,
        engine: SimilarityEngine,
        face_model,
        max_scans: int = MAX_LIVE_SCANS,
        max_checks_per_second: float = MAX_CHECKS_PER_SECOND
    ):
        self._engine = engine
        self._face_model = face_model
        self.max_scans = max_scans
        self.max_checks_per_second = max_checks_per_second
        self._scans: Dict[str, LiveScanSession] = {}

    def count(self) -> int:
        return len(self._scans)

    def list(self) -> List[LiveScanSession]:
        return list(self._scans.values())

    def get(self, scan_id: str) -> LiveScanSession:
        session = self._scans.get(scan_id)
        if session is None:
            raise NotFound(f"Live scan '{scan_id}' not found")
        return session

    def create(
        self,
        target: EmbeddingLike,
        threshold: Optional[float] = None,
        checks_per_second: float = DEFAULT_CHECKS_PER_SECOND,
        label: str = ""
    ) -> LiveScanSession:
        """
        Register and start a new scan.

        When the registry is full, finished scans are evicted oldest first
        to make room; running scans are never evicted.
        """
        try:
            checks_per_second = float(checks_per_second)
        except (TypeError, ValueError):
            raise ValidationError(f"checks_per_second must be a number, got {checks_per_second!r}")
        if checks_per_second > self.max_checks_per_second:
            raise ValidationError(
                f"checks_per_second must be at most {self.max_checks_per_second}"
            )

        if len(self._scans) >= self.max_scans:
            self._evict_finished(len(self._scans) - self.max_scans + 1)
        if len(self._scans) >= self.max_scans:
            raise ScanLimitReached(f"Max live scans ({self.max_scans}) reached")

        source = FrameBufferProbeSource(self._face_model)
        controller = LiveScanController(source, self._engine)
        controller.start(target, threshold=threshold, checks_per_second=checks_per_second)

        session = LiveScanSession(
            scan_id=str(uuid.uuid4()),
            label=label,
            controller=controller,
            source=source
        )
        self._scans[session.scan_id] = session
        logger.info(f"Registered live scan {session.scan_id} ('{label}')")
        return session

    def _evict_finished(self, needed: int) -> None:
        # Registry order is creation order
        finished = [
            s for s in self._scans.values()
            if s.controller.state is not ScanState.SCANNING
            and not s.controller.comparison_in_flight
        ]
        for session in finished[:needed]:
            del self._scans[session.scan_id]
            logger.info(
                f"Evicted finished live scan {session.scan_id} "
                f"({session.controller.state.value})"
            )

    def push_frame(self, scan_id: str, image_bytes: bytes) -> LiveScanSession:
        session = self.get(scan_id)
        session.source.push(image_bytes)
        return session

    def stop(self, scan_id: str) -> LiveScanSession:
        session = self.get(scan_id)
        session.controller.stop()
        return session

    def reset(self, scan_id: str) -> LiveScanSession:
        session = self.get(scan_id)
        session.controller.reset()
        return session

    def restart(self, scan_id: str) -> LiveScanSession:
        session = self.get(scan_id)
        session.controller.restart()
        return session

    async def remove(self, scan_id: str) -> None:
        session = self._scans.pop(scan_id, None)
        if session is None:
            raise NotFound(f"Live scan '{scan_id}' not found")
        await session.controller.aclose()
        logger.info(f"Removed live scan {scan_id}")

    async def close_all(self) -> None:
        sessions = list(self._scans.values())
        self._scans.clear()
        for session in sessions:
            await session.controller.aclose()
        if sessions:
            logger.info(f"Closed {len(sessions)} live scans")
