import logging

from meshcall.logging_config import setup_logging
from meshcall.rtc.config import DEFAULT_STUN_URLS, CallConfig


def test_defaults_use_stun_only():
    cfg = CallConfig()
    servers = cfg.ice_servers()

    assert not cfg.has_turn
    assert len(servers) == 1
    assert servers[0].urls == DEFAULT_STUN_URLS
    assert cfg.ring_timeout is None


def test_turn_servers_need_credentials():
    cfg = CallConfig(turn_username="user", turn_password="secret")
    servers = cfg.rtc_configuration().iceServers

    assert cfg.has_turn
    assert len(servers) == 2
    assert servers[1].username == "user"
    assert servers[1].credential == "secret"


def test_from_env(monkeypatch):
    monkeypatch.setenv("MESHCALL_STUN_URLS", "stun:a.example:3478, stun:b.example:3478")
    monkeypatch.setenv("MESHCALL_TURN_USERNAME", "u")
    monkeypatch.setenv("MESHCALL_TURN_PASSWORD", "p")
    monkeypatch.setenv("MESHCALL_RING_TIMEOUT_SEC", "30")
    monkeypatch.setenv("MESHCALL_END_GRACE_SEC", "0")
    monkeypatch.setenv("MESHCALL_VIDEO", "off")
    monkeypatch.setenv("MESHCALL_REMOTE_SINK", "pulse:default")

    cfg = CallConfig.from_env()

    assert cfg.stun_urls == ["stun:a.example:3478", "stun:b.example:3478"]
    assert cfg.has_turn
    assert cfg.ring_timeout == 30.0
    assert cfg.end_grace_delay == 0.0
    assert cfg.video_enabled is False
    assert cfg.audio_enabled is True
    assert cfg.remote_sink == "pulse:default"


def test_bad_numbers_fall_back(monkeypatch):
    monkeypatch.setenv("MESHCALL_RING_TIMEOUT_SEC", "soon")
    assert CallConfig.from_env().ring_timeout is None


def test_setup_logging_reads_env_level(monkeypatch):
    monkeypatch.setenv("MESHCALL_LOG_LEVEL", "warning")
    root = logging.getLogger()
    before = root.level
    try:
        setup_logging()
        assert root.level == logging.WARNING
    finally:
        root.setLevel(before)
