"""Call configuration.

Defaults mirror the hosted deployment: one public STUN server, TURN relays
only when credentials are provided.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

from aiortc import RTCConfiguration, RTCIceServer


DEFAULT_STUN_URLS = ["stun:stun.relay.metered.ca:80"]
DEFAULT_TURN_URLS = [
    "turn:global.relay.metered.ca:80",
    "turn:global.relay.metered.ca:80?transport=tcp",
    "turn:global.relay.metered.ca:443",
    "turns:global.relay.metered.ca:443?transport=tcp",
]


def _env_list(name: str, default: List[str]) -> List[str]:
    v = os.environ.get(name)
    if v is None:
        return list(default)
    return [item.strip() for item in v.split(",") if item.strip()]


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    v = os.environ.get(name)
    if v is None or not v.strip():
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_truthy(name: str, default: bool) -> bool:
    v = os.environ.get(name)
    if v is None:
        return default
    return v.strip().casefold() in {"1", "true", "yes", "on"}


@dataclass
class CallConfig:
    stun_urls: List[str] = field(default_factory=lambda: list(DEFAULT_STUN_URLS))
    turn_urls: List[str] = field(default_factory=lambda: list(DEFAULT_TURN_URLS))
    turn_username: Optional[str] = None
    turn_password: Optional[str] = None

    # Time the "ended" state stays visible before the session closes.
    end_grace_delay: float = 1.0
    # None keeps calling/ringing sessions open until a local action.
    ring_timeout: Optional[float] = None

    video_enabled: bool = True
    audio_enabled: bool = True

    # "blackhole", "none" or "<format>:<device>" (e.g. "pulse:default").
    remote_sink: str = "blackhole"

    @classmethod
    def from_env(cls) -> "CallConfig":
        return cls(
            stun_urls=_env_list("MESHCALL_STUN_URLS", DEFAULT_STUN_URLS),
            turn_urls=_env_list("MESHCALL_TURN_URLS", DEFAULT_TURN_URLS),
            turn_username=os.environ.get("MESHCALL_TURN_USERNAME") or None,
            turn_password=os.environ.get("MESHCALL_TURN_PASSWORD") or None,
            end_grace_delay=_env_float("MESHCALL_END_GRACE_SEC", 1.0) or 0.0,
            ring_timeout=_env_float("MESHCALL_RING_TIMEOUT_SEC", None),
            video_enabled=_env_truthy("MESHCALL_VIDEO", True),
            audio_enabled=_env_truthy("MESHCALL_AUDIO", True),
            remote_sink=os.environ.get("MESHCALL_REMOTE_SINK", "blackhole"),
        )

    @property
    def has_turn(self) -> bool:
        return bool(self.turn_username and self.turn_password and self.turn_urls)

    def ice_servers(self) -> List[RTCIceServer]:
        servers: List[RTCIceServer] = []
        if self.stun_urls:
            servers.append(RTCIceServer(urls=list(self.stun_urls)))
        if self.has_turn:
            servers.append(
                RTCIceServer(
                    urls=list(self.turn_urls),
                    username=self.turn_username,
                    credential=self.turn_password,
                )
            )
        return servers

    def rtc_configuration(self) -> RTCConfiguration:
        return RTCConfiguration(iceServers=self.ice_servers())
