"""
Tests for the live scan controller and manager.
"""
import asyncio

import pytest

from facegate.errors import (
    CaptureUnavailable,
    InvalidTarget,
    NoFaceDetected,
    NotFound,
    ScanLimitReached,
    TransientCaptureFailure,
    ValidationError
)
from facegate.live_scan import (
    CaptureProbeSource,
    FrameBufferProbeSource,
    LiveScanController,
    LiveScanManager,
    ProbeSource,
    ScanState
)

from conftest import E1, E2, E3


class ScriptedProbeSource(ProbeSource):
    """Returns (or raises) scripted values in order, then repeats the last one."""

    def __init__(self, *script):
        self.script = list(script)
        self.calls = 0

    async def acquire(self):
        index = min(self.calls, len(self.script) - 1)
        self.calls += 1
        value = self.script[index]
        if isinstance(value, Exception):
            raise value
        return value


class GatedProbeSource(ProbeSource):
    """Blocks every acquire until released, tracking concurrency."""

    def __init__(self, value):
        self.value = value
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()
        self.calls = 0
        self.active = 0
        self.max_active = 0

    async def acquire(self):
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.entered.set()
        try:
            await self.gate.wait()
            return self.value
        finally:
            self.active -= 1


class TestLiveScanController:
    async def test_match_within_first_interval(self, engine):
        source = ScriptedProbeSource(E1)
        async with LiveScanController(source, engine) as controller:
            controller.start(E1, checks_per_second=2)
            assert controller.state is ScanState.SCANNING

            state = await controller.wait(timeout=0.5)

            assert state is ScanState.SUCCEEDED
            assert controller.last_similarity == pytest.approx(1.0)
            assert controller.ticks_completed == 1

            # No further ticks once verified
            await asyncio.sleep(0.6)
            assert source.calls == 1

    async def test_keeps_scanning_until_match(self, engine):
        source = ScriptedProbeSource(E2, E2, E3)
        async with LiveScanController(source, engine) as controller:
            controller.start(E1, checks_per_second=50)
            assert await controller.wait(timeout=2.0) is ScanState.SUCCEEDED
            assert source.calls == 3
            assert controller.ticks_completed == 3
            assert controller.last_similarity == pytest.approx(0.9938837, abs=1e-6)

    async def test_stop_discards_late_result(self, engine):
        source = GatedProbeSource(E1)
        async with LiveScanController(source, engine) as controller:
            controller.start(E1, checks_per_second=10)
            await asyncio.wait_for(source.entered.wait(), 1.0)

            assert controller.stop() is True
            assert controller.state is ScanState.IDLE

            in_flight = controller._in_flight
            source.gate.set()
            await in_flight

            assert controller.state is ScanState.IDLE
            assert controller.last_similarity is None
            assert controller.ticks_completed == 0

    async def test_stop_when_idle_is_noop(self, engine):
        controller = LiveScanController(ScriptedProbeSource(E1), engine)
        assert controller.stop() is False
        assert controller.cancel() is False
        assert controller.state is ScanState.IDLE

    async def test_slow_comparison_skips_ticks(self, engine):
        source = GatedProbeSource(E1)
        async with LiveScanController(source, engine) as controller:
            controller.start(E1, checks_per_second=50)
            await asyncio.sleep(0.2)

            assert source.calls == 1
            assert source.max_active == 1
            assert controller.ticks_skipped > 0
            assert controller.comparison_in_flight is True

            source.gate.set()
            assert await controller.wait(timeout=1.0) is ScanState.SUCCEEDED
            assert source.max_active == 1

    async def test_transient_failures_do_not_stop_scan(self, engine):
        source = ScriptedProbeSource(
            TransientCaptureFailure(),
            NoFaceDetected(),
            [1.0, 0.0],
            E1
        )
        async with LiveScanController(source, engine) as controller:
            controller.start(E1, checks_per_second=50)
            assert await controller.wait(timeout=2.0) is ScanState.SUCCEEDED
            assert source.calls == 4
            assert controller.ticks_completed == 1
            assert controller.last_error is None

    async def test_unexpected_error_is_recorded(self, engine):
        source = ScriptedProbeSource(RuntimeError("camera glitch"), E2)
        async with LiveScanController(source, engine) as controller:
            controller.start(E1, checks_per_second=50)
            await asyncio.sleep(0.15)
            assert controller.state is ScanState.SCANNING
            assert controller.ticks_completed >= 1

        source = ScriptedProbeSource(RuntimeError("camera glitch"))
        async with LiveScanController(source, engine) as controller:
            controller.start(E1, checks_per_second=50)
            await asyncio.sleep(0.15)
            assert controller.state is ScanState.SCANNING
            assert isinstance(controller.last_error, RuntimeError)
            assert "camera glitch" in controller.snapshot()["last_error"]

    async def test_capture_unavailable_ends_scan(self, engine):
        fatal = []
        source = ScriptedProbeSource(CaptureUnavailable("camera unplugged"))
        controller = LiveScanController(
            source, engine, on_fatal=lambda c, e: fatal.append(e)
        )
        async with controller:
            controller.start(E1, checks_per_second=50)
            assert await controller.wait(timeout=1.0) is ScanState.IDLE

            assert isinstance(controller.fatal_error, CaptureUnavailable)
            assert len(fatal) == 1
            await asyncio.sleep(0.1)
            assert source.calls == 1

    @pytest.mark.parametrize("target", [
        [1.0, 0.0],
        [0.0, 0.0, 0.0, 0.0],
        [float("nan"), 0.0, 0.0, 0.0],
        "not an embedding",
    ])
    async def test_invalid_target_rejected(self, engine, target):
        controller = LiveScanController(ScriptedProbeSource(E1), engine)
        with pytest.raises(InvalidTarget):
            controller.start(target)
        assert controller.state is ScanState.IDLE

    @pytest.mark.parametrize("checks_per_second", [0, -1, float("inf"), float("nan"), "fast"])
    async def test_invalid_rate_rejected(self, engine, checks_per_second):
        controller = LiveScanController(ScriptedProbeSource(E1), engine)
        with pytest.raises(ValidationError):
            controller.start(E1, checks_per_second=checks_per_second)
        assert controller.state is ScanState.IDLE

    async def test_invalid_threshold_rejected(self, engine):
        controller = LiveScanController(ScriptedProbeSource(E1), engine)
        with pytest.raises(ValidationError):
            controller.start(E1, threshold=2.0)

    async def test_start_while_scanning_rejected(self, engine):
        source = GatedProbeSource(E1)
        async with LiveScanController(source, engine) as controller:
            controller.start(E1)
            with pytest.raises(ValidationError):
                controller.start(E1)

    async def test_threshold_override(self, engine):
        source = ScriptedProbeSource(E3)
        async with LiveScanController(source, engine) as controller:
            controller.start(E1, threshold=0.999, checks_per_second=50)
            await asyncio.sleep(0.2)
            assert controller.state is ScanState.SCANNING
            assert controller.threshold == 0.999
            assert controller.ticks_completed > 1

    async def test_reset(self, engine):
        async with LiveScanController(ScriptedProbeSource(E1), engine) as controller:
            controller.start(E1, checks_per_second=50)
            await controller.wait(timeout=1.0)
            assert controller.state is ScanState.SUCCEEDED

            controller.reset()
            assert controller.state is ScanState.IDLE
            assert controller.last_similarity is None

    async def test_reset_while_scanning_rejected(self, engine):
        async with LiveScanController(GatedProbeSource(E1), engine) as controller:
            controller.start(E1)
            with pytest.raises(ValidationError):
                controller.reset()

    async def test_restart_reuses_settings(self, engine):
        source = ScriptedProbeSource(E1)
        async with LiveScanController(source, engine) as controller:
            with pytest.raises(ValidationError):
                controller.restart()

            controller.start(E1, threshold=0.8, checks_per_second=50)
            await controller.wait(timeout=1.0)

            controller.restart()
            assert controller.state is ScanState.SCANNING
            assert controller.threshold == 0.8
            assert controller.checks_per_second == 50
            assert await controller.wait(timeout=1.0) is ScanState.SUCCEEDED
            assert source.calls == 2

    async def test_aclose_cancels_outstanding_work(self, engine):
        source = GatedProbeSource(E1)
        controller = LiveScanController(source, engine)
        controller.start(E1, checks_per_second=10)
        await asyncio.wait_for(source.entered.wait(), 1.0)

        await controller.aclose()

        assert controller.state is ScanState.IDLE
        assert controller.comparison_in_flight is False
        assert source.active == 0

    async def test_snapshot(self, engine):
        async with LiveScanController(ScriptedProbeSource(E1), engine) as controller:
            controller.start(E1, checks_per_second=50)
            await controller.wait(timeout=1.0)
            snapshot = controller.snapshot()

        assert snapshot["state"] == "succeeded"
        assert snapshot["threshold"] == 0.7
        assert snapshot["ticks_completed"] == 1
        assert snapshot["fatal_error"] is None
        assert snapshot["finished_at"] >= snapshot["started_at"]


class TestProbeSources:
    async def test_frame_buffer_uses_each_frame_once(self, face_model):
        source = FrameBufferProbeSource(face_model)
        with pytest.raises(TransientCaptureFailure):
            await source.acquire()

        source.push(b"img-e2")
        source.push(b"img-e1")
        assert source.frames_received == 2
        assert list(await source.acquire()) == E1

        with pytest.raises(TransientCaptureFailure):
            await source.acquire()

    async def test_frame_buffer_rejects_empty_frame(self, face_model):
        source = FrameBufferProbeSource(face_model)
        with pytest.raises(ValidationError):
            source.push(b"")

    async def test_capture_source(self, face_model):
        async def capture():
            return b"img-e3"

        source = CaptureProbeSource(capture, face_model)
        assert list(await source.acquire()) == pytest.approx(E3)


class TestLiveScanManager:
    async def test_create_and_push_frame(self, engine, face_model):
        manager = LiveScanManager(engine, face_model, max_scans=2, max_checks_per_second=50)
        try:
            session = manager.create(E1, checks_per_second=50, label="front door")
            assert manager.get(session.scan_id) is session
            assert session.controller.state is ScanState.SCANNING

            manager.push_frame(session.scan_id, b"img-e1")
            assert await session.controller.wait(timeout=1.0) is ScanState.SUCCEEDED

            snapshot = session.snapshot()
            assert snapshot["label"] == "front door"
            assert snapshot["frames_received"] == 1
            assert snapshot["state"] == "succeeded"
        finally:
            await manager.close_all()

    async def test_limit(self, engine, face_model):
        manager = LiveScanManager(engine, face_model, max_scans=1)
        try:
            manager.create(E1)
            with pytest.raises(ScanLimitReached):
                manager.create(E2)
            assert manager.count() == 1
        finally:
            await manager.close_all()

    async def test_finished_scans_make_room(self, engine, face_model):
        manager = LiveScanManager(engine, face_model, max_scans=2, max_checks_per_second=50)
        try:
            first = manager.create(E1, checks_per_second=50)
            second = manager.create(E1, checks_per_second=50)
            for session in (first, second):
                manager.push_frame(session.scan_id, b"img-e1")
                assert await session.controller.wait(timeout=1.0) is ScanState.SUCCEEDED

            third = manager.create(E2, checks_per_second=50)

            assert manager.count() == 2
            assert third.controller.state is ScanState.SCANNING
            with pytest.raises(NotFound):
                manager.get(first.scan_id)
            assert manager.get(second.scan_id) is second
        finally:
            await manager.close_all()

    async def test_stopped_scan_makes_room(self, engine, face_model):
        manager = LiveScanManager(engine, face_model, max_scans=1)
        try:
            stopped = manager.create(E1)
            manager.stop(stopped.scan_id)

            replacement = manager.create(E2)

            assert [s.scan_id for s in manager.list()] == [replacement.scan_id]
        finally:
            await manager.close_all()

    async def test_rate_above_max_rejected(self, engine, face_model):
        manager = LiveScanManager(engine, face_model, max_checks_per_second=5)
        with pytest.raises(ValidationError):
            manager.create(E1, checks_per_second=6)
        assert manager.count() == 0

    @pytest.mark.parametrize("checks_per_second", ["fast", None, [1]])
    async def test_non_numeric_rate_rejected(self, engine, face_model, checks_per_second):
        manager = LiveScanManager(engine, face_model)
        with pytest.raises(ValidationError):
            manager.create(E1, checks_per_second=checks_per_second)
        assert manager.count() == 0

    async def test_invalid_target_not_registered(self, engine, face_model):
        manager = LiveScanManager(engine, face_model)
        with pytest.raises(InvalidTarget):
            manager.create([0.0, 0.0, 0.0, 0.0])
        assert manager.count() == 0

    async def test_stop_reset_restart_remove(self, engine, face_model):
        manager = LiveScanManager(engine, face_model)
        try:
            session = manager.create(E1)
            manager.stop(session.scan_id)
            assert session.controller.state is ScanState.IDLE

            manager.restart(session.scan_id)
            assert session.controller.state is ScanState.SCANNING

            with pytest.raises(ValidationError):
                manager.reset(session.scan_id)

            await manager.remove(session.scan_id)
            assert session.controller.state is ScanState.IDLE
            with pytest.raises(NotFound):
                manager.get(session.scan_id)
            with pytest.raises(NotFound):
                await manager.remove(session.scan_id)
        finally:
            await manager.close_all()

    async def test_close_all(self, engine, face_model):
        manager = LiveScanManager(engine, face_model)
        sessions = [manager.create(E1), manager.create(E2)]

        await manager.close_all()

        assert manager.count() == 0
        assert all(s.controller.state is ScanState.IDLE for s in sessions)
