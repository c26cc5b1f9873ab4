import asyncio
import fractions

import numpy as np
import pytest
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError, VideoStreamTrack
from av import AudioFrame

from peercall.audio import AudioPipeline, ProcessedAudioTrack
from peercall.audio.graph import array_to_frame, frame_to_array
from peercall.errors import MediaAcquisitionError, SuppressionModuleError
from peercall.webrtc import MediaStream

from conftest import suppression_config


class ToneTrack(MediaStreamTrack):
    """48kHz s16 사인파 트랙."""

    kind = "audio"

    def __init__(self, layout="mono", samples=960):
        super().__init__()
        self.layout = layout
        self.samples = samples
        self.pts = 0

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError
        channels = 2 if self.layout == "stereo" else 1
        t = (np.arange(self.samples) + self.pts) / 48000.0
        tone = (np.sin(2 * np.pi * 440.0 * t) * 8000).astype(np.int16)
        data = np.repeat(tone, channels).reshape(1, -1)
        frame = AudioFrame.from_ndarray(data, format="s16", layout=self.layout)
        frame.sample_rate = 48000
        frame.pts = self.pts
        frame.time_base = fractions.Fraction(1, 48000)
        self.pts += self.samples
        return frame


class CountingSuppressor:
    instances = 0

    def __init__(self, payload=None, sample_rate=48000, max_channels=2):
        type(self).instances += 1
        self.payload = payload

    def process(self, samples):
        return samples


def _stream(*tracks):
    return MediaStream(list(tracks) or [ToneTrack()])


async def test_initialize_runs_once_for_concurrent_callers():
    CountingSuppressor.instances = 0
    pipeline = AudioPipeline(config=suppression_config("test_audio_pipeline:CountingSuppressor"))
    try:
        results = await asyncio.gather(pipeline.initialize(), pipeline.initialize())
        await pipeline.initialize()
    finally:
        pipeline.close()

    assert results == [True, True]
    assert CountingSuppressor.instances == 1


async def test_payload_passed_to_factory(tmp_path):
    payload_path = tmp_path / "profile.bin"
    payload_path.write_bytes(b"\x01\x02\x03")
    pipeline = AudioPipeline(
        config=suppression_config("test_audio_pipeline:CountingSuppressor", payload=str(payload_path))
    )
    try:
        assert await pipeline.initialize()
        assert pipeline._suppressor.payload == b"\x01\x02\x03"
    finally:
        pipeline.close()


async def test_missing_module_degrades_to_raw_track(degraded_pipeline):
    assert await degraded_pipeline.initialize() is False
    assert degraded_pipeline.degraded
    assert isinstance(degraded_pipeline.last_error, SuppressionModuleError)

    raw = ToneTrack()
    assert degraded_pipeline.attach(_stream(raw)) is raw


async def test_disabled_suppression_uses_raw_track():
    pipeline = AudioPipeline(config=suppression_config(enabled=False))
    try:
        assert await pipeline.initialize() is False
        assert pipeline.last_error is None
        raw = ToneTrack()
        assert pipeline.attach(_stream(raw)) is raw
    finally:
        pipeline.close()


async def test_invalid_payload_degrades(tmp_path):
    payload_path = tmp_path / "profile.npy"
    payload_path.write_bytes(b"not a numpy file")
    pipeline = AudioPipeline(config=suppression_config(payload=str(payload_path)))
    try:
        assert await pipeline.initialize() is False
        assert pipeline.degraded
    finally:
        pipeline.close()


async def test_attach_before_initialize_returns_raw_track(pipeline):
    raw = ToneTrack()

    assert pipeline.attach(_stream(raw)) is raw


async def test_attach_requires_audio(pipeline):
    await pipeline.initialize()

    with pytest.raises(MediaAcquisitionError):
        pipeline.attach(MediaStream([VideoStreamTrack()]))


@pytest.mark.parametrize("layout", ["mono", "stereo"])
async def test_processed_track_emits_suppressed_frames(pipeline, layout):
    await pipeline.initialize()
    raw = ToneTrack(layout=layout)

    track = pipeline.attach(_stream(raw))
    frame = await track.recv()

    assert isinstance(track, ProcessedAudioTrack)
    assert track is not raw
    assert pipeline.context.state == "running"
    assert frame.format.name == "s16"
    assert frame.layout.name == layout
    assert frame.samples == 960
    assert frame.sample_rate == 48000
    assert frame.pts == 0
    # 첫 프레임은 노이즈 추정치가 입력 자체이므로 최소 이득까지 감쇠
    assert np.abs(frame.to_ndarray()).max() < 8000 * 0.2
    assert pipeline.graph.suppressor_node.frames_processed == 1


async def test_attach_same_stream_is_idempotent(pipeline):
    await pipeline.initialize()
    stream = _stream()

    assert pipeline.attach(stream) is pipeline.attach(stream)


async def test_hot_swap_keeps_old_graph_until_released(pipeline):
    await pipeline.initialize()
    old_raw, new_raw = ToneTrack(), ToneTrack()
    old_track = pipeline.attach(_stream(old_raw))

    new_track = pipeline.attach(_stream(new_raw))

    assert new_track is not old_track
    assert old_track.readyState == "live"
    assert old_raw.readyState == "live"

    pipeline.release_superseded()

    assert old_track.readyState == "ended"
    assert old_raw.readyState == "ended"
    assert new_track.readyState == "live"
    frame = await new_track.recv()
    assert frame.samples == 960


async def test_detach_releases_graph_and_raw_track(pipeline):
    await pipeline.initialize()
    raw = ToneTrack()
    track = pipeline.attach(_stream(raw))

    pipeline.detach()
    pipeline.detach()

    assert pipeline.graph is None
    assert raw.readyState == "ended"
    assert track.readyState == "ended"
    with pytest.raises(MediaStreamError):
        await track.recv()
    assert pipeline.context.state == "suspended"

    pipeline.attach(_stream())
    assert pipeline.context.state == "running"


async def test_close_shuts_context(pipeline):
    await pipeline.initialize()
    pipeline.attach(_stream())

    pipeline.close()

    assert pipeline.context.closed
    assert not pipeline.ready
    raw = ToneTrack()
    assert pipeline.attach(_stream(raw)) is raw


async def test_processing_failure_passes_raw_frames():
    pipeline = AudioPipeline(config=suppression_config("conftest:FailingSuppressor"))
    try:
        await pipeline.initialize()
        track = pipeline.attach(_stream(ToneTrack()))

        first = await track.recv()
        second = await track.recv()

        assert np.abs(first.to_ndarray()).max() > 7000
        assert second.pts == 960
        assert pipeline.graph.suppressor_node.frames_bypassed == 2
        assert pipeline.graph.suppressor_node.frames_processed == 0
    finally:
        pipeline.close()


def test_frame_conversion_handles_planar_float():
    data = np.linspace(-0.5, 0.5, 2 * 480, dtype=np.float32).reshape(2, 480)
    frame = AudioFrame.from_ndarray(data, format="fltp", layout="stereo")
    frame.sample_rate = 48000

    samples = frame_to_array(frame)
    rebuilt = array_to_frame(samples, frame)

    assert samples.shape == (2, 480)
    np.testing.assert_allclose(rebuilt.to_ndarray(), data)
    assert rebuilt.format.name == "fltp"
    # 타이밍 정보가 없는 프레임도 변환됨 (억제 우회 없음)
    assert frame.time_base is None
    assert rebuilt.pts is None
