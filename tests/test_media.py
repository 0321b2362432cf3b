import av
import pytest
from aiortc.contrib.media import MediaBlackhole

from fakes import FakePlayer, FakeTrack, failing_player

from meshcall.rtc.media import (
    AUDIO,
    VIDEO,
    CaptureConfig,
    GatedTrack,
    MediaAccessDenied,
    MediaSession,
    MediaUnavailable,
    RemoteMediaSink,
    RemoteStream,
)


def _session(factory=FakePlayer):
    return MediaSession(CaptureConfig(video_device="cam0", audio_device="mic0"), player_factory=factory)


@pytest.mark.asyncio
async def test_acquire_opens_both_kinds():
    media = _session()
    stream = await media.acquire(True, True)

    assert set(stream.tracks) == {AUDIO, VIDEO}
    assert [t.kind for t in stream.all_tracks()] == [AUDIO, VIDEO]
    assert stream.is_enabled(AUDIO) and stream.is_enabled(VIDEO)
    assert len(stream.players) == 2


@pytest.mark.asyncio
async def test_acquire_audio_only():
    stream = await _session().acquire(False, True)
    assert list(stream.tracks) == [AUDIO]


@pytest.mark.asyncio
async def test_acquire_nothing_is_unavailable():
    with pytest.raises(MediaUnavailable):
        await _session().acquire(False, False)


@pytest.mark.asyncio
async def test_permission_error_maps_to_access_denied():
    media = _session(failing_player(PermissionError("camera blocked")))
    with pytest.raises(MediaAccessDenied):
        await media.acquire(True, True)


@pytest.mark.asyncio
async def test_missing_device_maps_to_unavailable():
    media = _session(failing_player(OSError("no such device")))
    with pytest.raises(MediaUnavailable):
        await media.acquire(True, False)


@pytest.mark.asyncio
async def test_partial_open_is_released():
    opened = []

    def factory(device, fmt, options):
        if device == "mic0":
            raise OSError("busy")
        player = FakePlayer(device, fmt, options)
        opened.append(player)
        return player

    with pytest.raises(MediaUnavailable):
        await _session(factory).acquire(True, True)
    assert opened and opened[0].video.stopped


def test_linux_audio_falls_back_to_alsa(monkeypatch):
    monkeypatch.setattr("meshcall.rtc.media.platform.system", lambda: "Linux")
    candidates = CaptureConfig().candidates(AUDIO)
    assert [(d, f) for d, f, _ in candidates] == [("default", "pulse"), ("default", "alsa")]
    video = CaptureConfig().candidates(VIDEO)
    assert video[0][:2] == ("/dev/video0", "v4l2")


def test_capture_config_from_env(monkeypatch):
    monkeypatch.setenv("MESHCALL_VIDEO_DEVICE", "/dev/video2")
    monkeypatch.setenv("MESHCALL_VIDEO_SIZE", "1280x720")
    cfg = CaptureConfig.from_env()
    assert cfg.video_device == "/dev/video2"
    assert cfg.candidates(VIDEO) == [("/dev/video2", None, {"video_size": "1280x720", "framerate": "30"})]


@pytest.mark.asyncio
async def test_toggles_flip_gates_and_release_is_idempotent():
    media = _session()
    stream = await media.acquire(True, True)

    media.set_video_enabled(stream, False)
    assert not stream.is_enabled(VIDEO)
    assert stream.is_enabled(AUDIO)
    media.set_audio_enabled(stream, False)
    assert not stream.is_enabled(AUDIO)

    sources = [t.source for t in stream.all_tracks()]
    assert media.release(stream) is True
    assert all(s.stopped for s in sources)
    assert media.release(stream) is False

    # Toggling after release is ignored.
    media.set_audio_enabled(stream, True)
    assert not stream.is_enabled(AUDIO)


@pytest.mark.asyncio
async def test_disabled_audio_gate_emits_silence():
    gate = GatedTrack(FakeTrack("audio"))
    live = await gate.recv()
    assert any(bytes(live.planes[0]))

    gate.enabled = False
    muted = await gate.recv()
    assert isinstance(muted, av.AudioFrame)
    assert muted.samples == live.samples
    assert muted.sample_rate == 8000
    assert not any(bytes(muted.planes[0]))


@pytest.mark.asyncio
async def test_disabled_video_gate_emits_black():
    gate = GatedTrack(FakeTrack("video"), enabled=False)
    frame = await gate.recv()
    pixels = frame.to_ndarray(format="rgb24")
    assert pixels.shape == (48, 64, 3)
    assert not pixels.any()
    assert gate.kind == VIDEO


def test_remote_stream_keeps_tracks_once():
    track = FakeTrack("audio")
    remote = RemoteStream()
    remote.add(track)
    remote.add(track)
    remote.add(FakeTrack("video"))
    assert remote.kinds() == [AUDIO, VIDEO]


def test_remote_sink_discards_video_and_blackhole_target():
    assert isinstance(RemoteMediaSink("blackhole")._create_recorder(AUDIO), MediaBlackhole)
    assert isinstance(RemoteMediaSink("pulse:default")._create_recorder(VIDEO), MediaBlackhole)


@pytest.mark.asyncio
async def test_remote_sink_consumes_and_stops():
    sink = RemoteMediaSink()
    await sink.add_track(FakeTrack("audio"))
    await sink.add_track(FakeTrack("video"))
    await sink.stop()
    await sink.stop()
