from __future__ import annotations

import pytest

from fakes import ALICE, BOB, CAROL, CallbackLog, FakePlayer, PeerConnectionRecorder

from meshcall.net.collaborators import InMemoryChatLog, InMemoryDirectory, InMemorySignalBus
from meshcall.rtc.config import CallConfig
from meshcall.rtc.coordinator import CoordinatorCallbacks
from meshcall.rtc.media import CaptureConfig, MediaSession


@pytest.fixture
def call_config() -> CallConfig:
    return CallConfig(stun_urls=[], end_grace_delay=0, remote_sink="none")


@pytest.fixture
def bus() -> InMemorySignalBus:
    return InMemorySignalBus()


@pytest.fixture
def directory() -> InMemoryDirectory:
    d = InMemoryDirectory()
    d.set_members("dm-1", [ALICE, BOB])
    d.set_members("group-1", [ALICE, BOB, CAROL])
    return d


@pytest.fixture
def chat_log() -> InMemoryChatLog:
    return InMemoryChatLog()


@pytest.fixture
def pcs() -> PeerConnectionRecorder:
    return PeerConnectionRecorder()


@pytest.fixture
def make_media():
    def _make(player_factory=FakePlayer) -> MediaSession:
        return MediaSession(CaptureConfig(video_device="cam0", audio_device="mic0"), player_factory=player_factory)

    return _make


@pytest.fixture
def make_coordinator(bus, directory, call_config, pcs, make_media):
    """Build a coordinator plus the CallbackLog wired into it."""

    def _make(cls, conversation_id, identity, *, media=None, config=None, **kwargs):
        log = CallbackLog()
        callbacks = CoordinatorCallbacks(
            on_log=log.on_log,
            on_status=log.on_status,
            on_participants=log.on_participants,
            on_remote_track=log.on_remote_track,
            on_alert=log.on_alert,
            on_close=log.on_close,
        )
        coordinator = cls(
            conversation_id,
            identity.participant_id,
            identity.display_name,
            bus,
            directory,
            media or make_media(),
            config=config or call_config,
            callbacks=callbacks,
            pc_factory=pcs,
            **kwargs,
        )
        return coordinator, log

    return _make
