"""Local capture and remote media helpers for aiortc.

- Open camera/microphone through ffmpeg (`MediaPlayer`) with per-platform defaults.
- Gate each local track so it can be muted/blanked without renegotiation.
- Drain remote tracks into a recorder (or a blackhole) so they keep flowing.
"""

from __future__ import annotations

import asyncio
import logging
import os
import platform
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import av
import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder

from ..net.protocol import CallError


logger = logging.getLogger(__name__)


AUDIO = "audio"
VIDEO = "video"


class MediaError(CallError):
	pass


class MediaAccessDenied(MediaError):
	pass


class MediaUnavailable(MediaError):
	pass


@dataclass
class CaptureConfig:
	"""Capture device selection.

	Unset fields fall back to the platform default device.
	"""

	video_device: Optional[str] = None
	video_format: Optional[str] = None
	audio_device: Optional[str] = None
	audio_format: Optional[str] = None
	video_size: str = "640x480"
	framerate: str = "30"

	@classmethod
	def from_env(cls) -> "CaptureConfig":
		return cls(
			video_device=os.environ.get("MESHCALL_VIDEO_DEVICE") or None,
			video_format=os.environ.get("MESHCALL_VIDEO_FORMAT") or None,
			audio_device=os.environ.get("MESHCALL_AUDIO_DEVICE") or None,
			audio_format=os.environ.get("MESHCALL_AUDIO_FORMAT") or None,
			video_size=os.environ.get("MESHCALL_VIDEO_SIZE", cls.video_size),
			framerate=os.environ.get("MESHCALL_FRAMERATE", cls.framerate),
		)

	def candidates(self, kind: str) -> List[Tuple[str, Optional[str], Dict[str, str]]]:
		"""(device, format, options) to try in order for one track kind."""
		system = platform.system()
		if kind == VIDEO:
			options = {"video_size": self.video_size, "framerate": self.framerate}
			if self.video_device:
				return [(self.video_device, self.video_format, options)]
			if system == "Darwin":
				return [("default:none", "avfoundation", options)]
			if system == "Windows":
				return [("video=Integrated Camera", "dshow", options)]
			return [("/dev/video0", "v4l2", options)]

		if self.audio_device:
			return [(self.audio_device, self.audio_format, {})]
		if system == "Darwin":
			return [("none:default", "avfoundation", {})]
		if system == "Windows":
			return [("audio=Microphone", "dshow", {})]
		# PulseAudio is typical on desktop Linux, ALSA as fallback.
		return [("default", "pulse", {}), ("default", "alsa", {})]


PlayerFactory = Callable[[str, Optional[str], Dict[str, str]], Any]


def _open_media_player(device: str, fmt: Optional[str], options: Dict[str, str]) -> MediaPlayer:
	return MediaPlayer(device, format=fmt, options=options or None)


def _silence_like(frame: av.AudioFrame) -> av.AudioFrame:
	silent = av.AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
	for p in silent.planes:
		p.update(bytes(p.buffer_size))
	silent.sample_rate = frame.sample_rate
	silent.pts = frame.pts
	silent.time_base = frame.time_base
	return silent


def _black_like(frame: av.VideoFrame) -> av.VideoFrame:
	black = av.VideoFrame.from_ndarray(np.zeros((frame.height, frame.width, 3), dtype=np.uint8), format="rgb24")
	black.pts = frame.pts
	black.time_base = frame.time_base
	return black


class GatedTrack(MediaStreamTrack):
	"""Pass-through track with an enabled flag.

	A disabled track keeps producing frames with the same timing, but they
	carry silence (audio) or black pixels (video). The RTP sender never
	changes, so toggling needs no offer/answer exchange.
	"""

	def __init__(self, source: MediaStreamTrack, *, enabled: bool = True):
		super().__init__()
		self.kind = source.kind
		self._source = source
		self.enabled = enabled

	@property
	def source(self) -> MediaStreamTrack:
		return self._source

	async def recv(self):  # type: ignore[override]
		frame = await self._source.recv()
		if self.enabled:
			return frame
		if isinstance(frame, av.AudioFrame):
			return _silence_like(frame)
		if isinstance(frame, av.VideoFrame):
			return _black_like(frame)
		return frame

	def stop(self) -> None:  # type: ignore[override]
		try:
			self._source.stop()
		except Exception:
			logger.debug("media source stop failed kind=%s", self.kind, exc_info=True)
		finally:
			super().stop()


@dataclass
class LocalStream:
	"""Owns the capture players so their tracks stay alive."""

	tracks: Dict[str, GatedTrack] = field(default_factory=dict)
	players: List[Any] = field(default_factory=list)
	released: bool = False

	def track(self, kind: str) -> Optional[GatedTrack]:
		return self.tracks.get(kind)

	def all_tracks(self) -> List[GatedTrack]:
		return [t for t in (self.tracks.get(AUDIO), self.tracks.get(VIDEO)) if t is not None]

	def is_enabled(self, kind: str) -> bool:
		t = self.tracks.get(kind)
		return bool(t and t.enabled)


class MediaSession:
	def __init__(self, config: Optional[CaptureConfig] = None, player_factory: Optional[PlayerFactory] = None):
		self._config = config or CaptureConfig.from_env()
		self._player_factory = player_factory or _open_media_player

	async def acquire(self, video_enabled: bool, audio_enabled: bool) -> LocalStream:
		if not video_enabled and not audio_enabled:
			raise MediaUnavailable("no media kind requested")
		loop = asyncio.get_running_loop()
		# ffmpeg device probing blocks; keep it off the event loop.
		stream = await loop.run_in_executor(None, self._acquire_blocking, video_enabled, audio_enabled)
		logger.info("media acquired kinds=%s", ",".join(sorted(stream.tracks)))
		return stream

	def set_video_enabled(self, handle: LocalStream, enabled: bool) -> None:
		self._set_enabled(handle, VIDEO, enabled)

	def set_audio_enabled(self, handle: LocalStream, enabled: bool) -> None:
		self._set_enabled(handle, AUDIO, enabled)

	def release(self, handle: LocalStream) -> bool:
		if handle.released:
			return False
		handle.released = True
		for t in handle.all_tracks():
			t.stop()
		handle.players.clear()
		logger.info("media released")
		return True

	def _set_enabled(self, handle: LocalStream, kind: str, enabled: bool) -> None:
		t = handle.track(kind)
		if t is None or handle.released:
			return
		t.enabled = bool(enabled)
		logger.debug("media %s enabled=%s", kind, t.enabled)

	def _acquire_blocking(self, video_enabled: bool, audio_enabled: bool) -> LocalStream:
		stream = LocalStream()
		try:
			for kind, wanted in ((VIDEO, video_enabled), (AUDIO, audio_enabled)):
				if not wanted:
					continue
				player, source = self._open_kind(kind)
				stream.players.append(player)
				stream.tracks[kind] = GatedTrack(source)
		except MediaError:
			self.release(stream)
			raise
		return stream

	def _open_kind(self, kind: str) -> Tuple[Any, MediaStreamTrack]:
		denied: Optional[BaseException] = None
		last: Optional[BaseException] = None
		for device, fmt, options in self._config.candidates(kind):
			try:
				player = self._player_factory(device, fmt, options)
			except PermissionError as e:
				logger.warning("media %s access denied device=%s format=%s", kind, device, fmt)
				denied = e
				continue
			except Exception as e:
				logger.info("media %s open failed device=%s format=%s: %s", kind, device, fmt, e)
				last = e
				continue
			source = getattr(player, kind, None)
			if source is None:
				last = MediaUnavailable(f"{device} has no {kind} stream")
				continue
			logger.info("media %s device=%s format=%s", kind, device, fmt)
			return player, source

		if denied is not None:
			raise MediaAccessDenied(f"{kind} capture permission denied") from denied
		raise MediaUnavailable(f"no usable {kind} capture device") from last


@dataclass
class RemoteStream:
	tracks: List[MediaStreamTrack] = field(default_factory=list)

	def add(self, track: MediaStreamTrack) -> None:
		if track not in self.tracks:
			self.tracks.append(track)

	def kinds(self) -> List[str]:
		return [t.kind for t in self.tracks]


class RemoteMediaSink:
	"""Consumes remote tracks, one recorder per track.

	`target` is "blackhole" (discard), or "<format>:<device>" to play remote
	audio through ffmpeg; a device that fails to open falls back to
	discarding. Video is always discarded.
	"""

	def __init__(self, target: str = "blackhole"):
		self._target = target
		self._recorders: List[Any] = []

	async def add_track(self, track: MediaStreamTrack) -> None:
		recorder = self._create_recorder(track.kind)
		recorder.addTrack(track)
		await recorder.start()
		self._recorders.append(recorder)

	async def stop(self) -> None:
		recorders, self._recorders = self._recorders, []
		for recorder in recorders:
			try:
				await recorder.stop()
			except Exception:
				logger.debug("remote sink stop failed", exc_info=True)

	def _create_recorder(self, kind: str) -> Any:
		fmt, _, device = self._target.partition(":")
		if self._target != "blackhole" and device and kind == AUDIO:
			try:
				recorder = MediaRecorder(device, format=fmt)
				logger.info("remote sink=%s kind=%s", self._target, kind)
				return recorder
			except Exception as e:
				logger.info("remote sink %s unavailable: %s", self._target, e)
		logger.debug("remote sink=blackhole kind=%s", kind)
		return MediaBlackhole()
