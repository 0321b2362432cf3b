"""Call signal envelope.

Signals are rows appended to the `call_signals` table of the realtime
store. Every row is addressed to one recipient inside one conversation.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, TypedDict


# Signal type constants
CALL_REQUEST = "call-request"
CALL_ACCEPTED = "call-accepted"
CALL_REJECTED = "call-rejected"
CALL_ENDED = "call-ended"

OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"

SIGNAL_TYPES = frozenset(
	{CALL_REQUEST, CALL_ACCEPTED, CALL_REJECTED, CALL_ENDED, OFFER, ANSWER, ICE_CANDIDATE}
)

SIGNALS_TABLE = "call_signals"


class CallError(Exception):
	"""Base class for call signaling errors."""


class MalformedSignal(CallError):
	pass


class PublishError(CallError):
	pass


class IceCandidateDict(TypedDict, total=False):
	candidate: str
	sdpMid: Optional[str]
	sdpMLineIndex: Optional[int]


class SessionDescriptionDict(TypedDict):
	sdp: str
	type: str


def _utc_now() -> str:
	return datetime.now(timezone.utc).isoformat()


def _new_signal_id() -> str:
	return uuid.uuid4().hex


def _validate_payload(signal_type: str, payload: Mapping[str, Any]) -> None:
	if signal_type == CALL_REQUEST:
		if not isinstance(payload.get("callerName"), str):
			raise MalformedSignal("call-request requires a callerName")
	elif signal_type in (OFFER, ANSWER):
		sdp = payload.get("sdp")
		if not isinstance(sdp, str) or not sdp:
			raise MalformedSignal(f"{signal_type} requires an sdp")
		if payload.get("type") != signal_type:
			raise MalformedSignal(f"{signal_type} carries a {payload.get('type')!r} description")
	elif signal_type == ICE_CANDIDATE:
		cand = payload.get("candidate")
		if not isinstance(cand, str) or not cand:
			raise MalformedSignal("ice-candidate requires a candidate")
		mline = payload.get("sdpMLineIndex")
		if mline is not None and (isinstance(mline, bool) or not isinstance(mline, int)):
			raise MalformedSignal("sdpMLineIndex must be an int")


@dataclass(frozen=True)
class CallSignal:
	conversation_id: str
	sender_id: str
	recipient_id: str
	type: str
	group: bool
	payload: Mapping[str, Any] = field(default_factory=dict)
	signal_id: str = field(default_factory=_new_signal_id)
	created_at: str = field(default_factory=_utc_now)

	def __post_init__(self) -> None:
		for name in ("conversation_id", "sender_id", "recipient_id", "signal_id"):
			value = getattr(self, name)
			if not isinstance(value, str) or not value:
				raise MalformedSignal(f"{name} is required")
		if self.type not in SIGNAL_TYPES:
			raise MalformedSignal(f"unknown signal type {self.type!r}")
		# The group marker routes a signal to the right coordinator, so it
		# must be present and unambiguous.
		if not isinstance(self.group, bool):
			raise MalformedSignal("group marker must be a boolean")
		if not isinstance(self.payload, Mapping):
			raise MalformedSignal("payload must be an object")
		_validate_payload(self.type, self.payload)

	def to_record(self) -> Dict[str, Any]:
		return {
			"signalId": self.signal_id,
			"conversationId": self.conversation_id,
			"senderId": self.sender_id,
			"recipientId": self.recipient_id,
			"type": self.type,
			"group": self.group,
			"payload": dict(self.payload),
			"createdAt": self.created_at,
		}

	@classmethod
	def from_record(cls, record: Any) -> "CallSignal":
		if not isinstance(record, dict):
			raise MalformedSignal("signal record must be an object")
		if "group" not in record:
			raise MalformedSignal("group marker is missing")
		payload = record.get("payload")
		if payload is None:
			payload = {}
		return cls(
			conversation_id=_as_id(record.get("conversationId")),
			sender_id=_as_id(record.get("senderId")),
			recipient_id=_as_id(record.get("recipientId")),
			type=str(record.get("type", "")),
			group=record["group"],
			payload=payload,
			signal_id=_as_id(record.get("signalId")),
			created_at=str(record.get("createdAt") or _utc_now()),
		)


def _as_id(value: Any) -> str:
	# Stores hand out integer keys; ids are compared as strings everywhere.
	if value is None or isinstance(value, bool):
		return ""
	return str(value)


def make_call_request(conversation_id: str, sender_id: str, recipient_id: str, caller_name: str, *, group: bool) -> CallSignal:
	return CallSignal(conversation_id, sender_id, recipient_id, CALL_REQUEST, group, {"callerName": caller_name})


def make_control(signal_type: str, conversation_id: str, sender_id: str, recipient_id: str, *, group: bool) -> CallSignal:
	if signal_type not in (CALL_ACCEPTED, CALL_REJECTED, CALL_ENDED):
		raise ValueError(f"{signal_type} is not a control signal")
	return CallSignal(conversation_id, sender_id, recipient_id, signal_type, group, {})


def make_description(conversation_id: str, sender_id: str, recipient_id: str, sdp: str, sdp_type: str, *, group: bool) -> CallSignal:
	return CallSignal(conversation_id, sender_id, recipient_id, sdp_type, group, {"sdp": sdp, "type": sdp_type})


def make_ice(conversation_id: str, sender_id: str, recipient_id: str, candidate: IceCandidateDict, *, group: bool) -> CallSignal:
	return CallSignal(conversation_id, sender_id, recipient_id, ICE_CANDIDATE, group, dict(candidate))
