"""
Integration tests for the scan loop: orchestrator, history, playback.
"""

import asyncio

import pytest

from kanwen.config import Settings
from kanwen.errors import RecognitionInputInvalid, RecognitionRateLimited
from kanwen.ocr.backends import RecognitionMode
from kanwen.ocr.text_cleaner import NO_TEXT, PENDING_TEXT
from kanwen.scan.history import ScanHistory, ScanResult
from kanwen.scan.orchestrator import ScanConfig, ScanOrchestrator, ScanStatus
from kanwen.speech.playback import PlaybackController

from tests.conftest import FakeBackend, FakeFrameSource


@pytest.fixture
def cloud_backend():
    return FakeBackend(RecognitionMode.CLOUD)


@pytest.fixture
def local_backend():
    return FakeBackend(RecognitionMode.LOCAL)


@pytest.fixture
def playback(speech_engine):
    controller = PlaybackController(speech_engine)
    yield controller
    speech_engine.finish()
    controller.close()


@pytest.fixture
def orchestrator(frame_source, cloud_backend, local_backend, playback):
    return ScanOrchestrator(
        frame_source,
        {RecognitionMode.CLOUD: cloud_backend, RecognitionMode.LOCAL: local_backend},
        playback=playback,
        config=ScanConfig(scan_interval=5.0, error_backoff=5.0),
    )


class TestScanOnce:

    @pytest.mark.asyncio
    async def test_success_records_and_speaks(self, orchestrator, cloud_backend, playback, frame):
        cloud_backend.results = ["今天天氣很好"]

        result = await orchestrator.scan_once()

        assert isinstance(result, ScanResult)
        assert result.text == "今天天氣很好"
        assert result.image_url == frame.to_data_url()
        assert not result.pending
        assert orchestrator.status == ScanStatus.SUCCESS
        assert orchestrator.latest == result
        assert orchestrator.result_text == "今天天氣很好"
        assert orchestrator.history.latest == result
        assert orchestrator.progress == 0.5
        assert playback.snapshot().current_text == "今天天氣很好"

    @pytest.mark.asyncio
    async def test_no_text_clears_latest(self, orchestrator, cloud_backend):
        cloud_backend.results = [NO_TEXT]

        assert await orchestrator.scan_once() is None
        assert orchestrator.status == ScanStatus.IDLE
        assert orchestrator.latest is None
        assert len(orchestrator.history) == 0

    @pytest.mark.asyncio
    async def test_no_frame(self, orchestrator, cloud_backend):
        orchestrator.frame_source = FakeFrameSource(None)
        assert await orchestrator.scan_once() is None
        assert cloud_backend.calls == 0

    @pytest.mark.asyncio
    async def test_paused(self, orchestrator, frame_source):
        orchestrator.pause()
        assert await orchestrator.scan_once() is None
        assert frame_source.captures == 0
        orchestrator.resume()
        assert not orchestrator.paused

    @pytest.mark.asyncio
    async def test_pending_placeholder_while_processing(self, orchestrator, cloud_backend):
        cloud_backend.gate = asyncio.Event()
        cloud_backend.results = ["今天天氣很好"]

        task = asyncio.create_task(orchestrator.scan_once())
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert orchestrator.status == ScanStatus.PROCESSING
        assert orchestrator.latest.pending
        assert orchestrator.latest.text == PENDING_TEXT

        cloud_backend.gate.set()
        result = await task
        assert result.id == orchestrator.latest.id

    @pytest.mark.asyncio
    async def test_single_cycle_in_flight(self, orchestrator, cloud_backend, frame_source):
        cloud_backend.gate = asyncio.Event()
        cloud_backend.results = ["第一次", "第二次"]

        first = asyncio.create_task(orchestrator.scan_once())
        await asyncio.sleep(0)

        assert orchestrator.is_busy
        assert await orchestrator.scan_once() is None
        assert frame_source.captures == 1

        cloud_backend.gate.set()
        assert (await first).text == "第一次"
        assert not orchestrator.is_busy

    @pytest.mark.asyncio
    async def test_failure_keeps_last_result_and_backs_off(self, orchestrator, cloud_backend):
        cloud_backend.results = ["今天天氣很好", RecognitionRateLimited(detail="429")]

        await orchestrator.scan_once()
        assert await orchestrator.scan_once() is None

        assert orchestrator.status == ScanStatus.ERROR
        assert orchestrator.error_message == RecognitionRateLimited().message
        assert not orchestrator.latest.pending
        assert orchestrator.latest.text.startswith("辨識失敗")
        assert orchestrator.history.latest.text == "今天天氣很好"
        assert orchestrator.result_text == "今天天氣很好"
        assert len(orchestrator.history) == 1
        assert orchestrator.next_delay == 10.0

    @pytest.mark.asyncio
    async def test_success_after_failure_restores_cadence(self, orchestrator, cloud_backend):
        cloud_backend.results = [RecognitionInputInvalid(), "明日有雨"]

        await orchestrator.scan_once()
        assert orchestrator.next_delay == 10.0

        await orchestrator.scan_once()
        assert orchestrator.next_delay == 5.0
        assert orchestrator.status == ScanStatus.SUCCESS
        assert orchestrator.error_message is None

    @pytest.mark.asyncio
    async def test_unexpected_exception_reported_as_failure(self, orchestrator, cloud_backend):
        async def broken(image, progress_callback=None):
            raise KeyError("boom")

        cloud_backend.recognize = broken
        assert await orchestrator.scan_once() is None
        assert orchestrator.status == ScanStatus.ERROR

    @pytest.mark.asyncio
    async def test_similar_result_not_interrupting(self, orchestrator, cloud_backend, speech_engine, playback):
        cloud_backend.results = ["今天天氣很好", "今天天氣真好"]

        await orchestrator.scan_once()
        assert speech_engine.started.wait(timeout=2)
        await orchestrator.scan_once()

        assert playback.snapshot().current_text == "今天天氣很好"
        assert orchestrator.history.latest.text == "今天天氣真好"

    @pytest.mark.asyncio
    async def test_auto_speak_disabled(self, orchestrator, cloud_backend, playback):
        orchestrator.config.auto_speak = False
        cloud_backend.results = ["今天天氣很好"]

        await orchestrator.scan_once()
        assert not playback.snapshot().is_speaking


class TestModeSwitch:

    @pytest.mark.asyncio
    async def test_in_flight_result_discarded(self, orchestrator, cloud_backend, local_backend):
        cloud_backend.gate = asyncio.Event()
        cloud_backend.results = ["舊的結果"]
        local_backend.results = ["新的結果"]

        stale = asyncio.create_task(orchestrator.scan_once())
        await asyncio.sleep(0)

        orchestrator.set_mode(RecognitionMode.LOCAL)
        assert orchestrator.status == ScanStatus.IDLE
        assert not orchestrator.is_busy

        fresh = await orchestrator.scan_once()
        assert fresh.text == "新的結果"

        cloud_backend.gate.set()
        assert await stale is None
        assert orchestrator.latest == fresh
        assert [r.text for r in orchestrator.history] == ["新的結果"]

    def test_unknown_mode_rejected(self, frame_source, cloud_backend):
        orchestrator = ScanOrchestrator(frame_source, {RecognitionMode.CLOUD: cloud_backend})
        with pytest.raises(ValueError):
            orchestrator.set_mode(RecognitionMode.LOCAL)

    def test_constructor_requires_backend_for_mode(self, frame_source, local_backend):
        with pytest.raises(ValueError):
            ScanOrchestrator(frame_source, {RecognitionMode.LOCAL: local_backend})


class TestUploadAndReplay:

    @pytest.mark.asyncio
    async def test_upload_forces_speech_and_skips_history(self, orchestrator, cloud_backend, playback, frame):
        cloud_backend.results = ["今天天氣很好", "今天天氣很好"]
        await orchestrator.scan_once()

        result = await orchestrator.recognize_upload(frame.to_data_url())

        assert result.text == "今天天氣很好"
        assert len(orchestrator.history) == 1
        assert playback.snapshot().is_speaking

    @pytest.mark.asyncio
    async def test_upload_failure_recorded(self, orchestrator, cloud_backend, frame):
        cloud_backend.results = [RecognitionInputInvalid()]
        assert await orchestrator.recognize_upload(frame) is None
        assert orchestrator.status == ScanStatus.ERROR
        assert orchestrator.error_message == RecognitionInputInvalid().message

    @pytest.mark.asyncio
    async def test_replay(self, orchestrator, cloud_backend, speech_engine):
        assert not orchestrator.replay()

        cloud_backend.results = ["今天天氣很好"]
        await orchestrator.scan_once()
        assert orchestrator.replay()

    @pytest.mark.asyncio
    async def test_stop_speech(self, orchestrator, cloud_backend, playback):
        cloud_backend.results = ["今天天氣很好"]
        await orchestrator.scan_once()
        orchestrator.stop_speech()
        assert not playback.snapshot().is_speaking


class TestFromSettings:

    @pytest.mark.asyncio
    async def test_history_limit_and_cadence_from_settings(self, frame_source, cloud_backend, local_backend):
        settings = Settings(
            recognition_mode="local",
            history_limit=2,
            scan_interval=3.0,
            error_backoff=4.0,
        )
        orchestrator = ScanOrchestrator.from_settings(
            frame_source,
            {RecognitionMode.CLOUD: cloud_backend, RecognitionMode.LOCAL: local_backend},
            settings,
        )
        local_backend.results = ["第一次", "第二次", "第三次"]

        for _ in range(3):
            await orchestrator.scan_once()

        assert orchestrator.mode == RecognitionMode.LOCAL
        assert orchestrator.config.scan_interval == 3.0
        assert orchestrator.config.error_backoff == 4.0
        assert [r.text for r in orchestrator.history] == ["第三次", "第二次"]


class TestRunLoop:

    @pytest.mark.asyncio
    async def test_run_survives_failures(self, frame_source):
        backend = FakeBackend(
            RecognitionMode.CLOUD,
            results=[RecognitionRateLimited(), "今天天氣很好", "明日有雨"],
        )
        history = ScanHistory()
        orchestrator = ScanOrchestrator(
            frame_source,
            {RecognitionMode.CLOUD: backend},
            history=history,
            config=ScanConfig(scan_interval=0.01, error_backoff=0.01),
        )
        stop = asyncio.Event()

        runner = asyncio.create_task(orchestrator.run(stop))
        for _ in range(200):
            if len(history) >= 2:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(runner, timeout=1)

        assert [r.text for r in history][-2:] == ["明日有雨", "今天天氣很好"]

    @pytest.mark.asyncio
    async def test_stop_before_start(self, frame_source, cloud_backend):
        orchestrator = ScanOrchestrator(frame_source, {RecognitionMode.CLOUD: cloud_backend})
        stop = asyncio.Event()
        stop.set()
        await asyncio.wait_for(orchestrator.run(stop), timeout=1)
        assert frame_source.captures == 0
