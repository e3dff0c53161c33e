"""
Call data model.

CallRecord mirrors one row of the shared `call` table. Session descriptions
are stored in the row as JSON text, candidates only ever travel over the
side-channel.
"""

import json
import random
import string
import time
from dataclasses import dataclass, asdict, fields
from typing import Optional, Dict, Any

from .constants import CallStatus, MediaKind, AudioRoute


@dataclass(frozen=True)
class SessionDescription:
    """Offer or answer payload produced by the peer connection."""
    sdp: str
    type: str  # 'offer' | 'answer'

    def to_json(self) -> str:
        return json.dumps({'type': self.type, 'sdp': self.sdp})

    @classmethod
    def from_json(cls, value: Optional[str]) -> Optional['SessionDescription']:
        if not value:
            return None
        data = json.loads(value)
        return cls(sdp=data['sdp'], type=data['type'])


@dataclass(frozen=True)
class IceCandidate:
    """One connectivity candidate, in browser wire form."""
    candidate: str
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'candidate': self.candidate,
            'sdpMid': self.sdp_mid,
            'sdpMLineIndex': self.sdp_mline_index,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'IceCandidate':
        return cls(
            candidate=data.get('candidate', ''),
            sdp_mid=data.get('sdpMid'),
            sdp_mline_index=data.get('sdpMLineIndex'),
        )


@dataclass
class CallRecord:
    """One call row."""
    id: str
    caller_id: str
    receiver_id: str
    room_id: str
    status: CallStatus = CallStatus.RINGING
    call_type: MediaKind = MediaKind.AUDIO
    sdp_offer: Optional[str] = None
    sdp_answer: Optional[str] = None
    audio_mode: Optional[AudioRoute] = None
    initiated_at: Optional[float] = None
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    duration: Optional[int] = None
    updated_at: Optional[float] = None
    updated_by: Optional[str] = None

    def __post_init__(self):
        self.status = CallStatus.normalize(self.status)
        self.call_type = MediaKind(self.call_type) if self.call_type else MediaKind.AUDIO
        if self.audio_mode is not None:
            self.audio_mode = AudioRoute(self.audio_mode)

    @property
    def offer(self) -> Optional[SessionDescription]:
        return SessionDescription.from_json(self.sdp_offer)

    @property
    def answer(self) -> Optional[SessionDescription]:
        return SessionDescription.from_json(self.sdp_answer)

    @property
    def is_terminal(self) -> bool:
        return self.status is not None and self.status.is_terminal

    def peer_of(self, user_id: str) -> str:
        """Return the other party's identity."""
        if user_id == self.caller_id:
            return self.receiver_id
        if user_id == self.receiver_id:
            return self.caller_id
        raise ValueError(f"{user_id} is not a party to call {self.id}")

    def to_dict(self) -> Dict[str, Any]:
        """Plain dict with enum values flattened (row/JSON form)."""
        data = asdict(self)
        for key in ('status', 'call_type', 'audio_mode'):
            value = data[key]
            data[key] = value.value if value is not None else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CallRecord':
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})

    @classmethod
    def from_row(cls, row) -> 'CallRecord':
        """Build from a sqlite3.Row (or any mapping)."""
        return cls.from_dict({key: row[key] for key in row.keys()})


@dataclass(frozen=True)
class RowChange:
    """A committed insert/update of a call row, as pushed by the change feed."""
    event: str  # 'INSERT' | 'UPDATE'
    new: CallRecord
    old: Optional[CallRecord] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event': self.event,
            'new': self.new.to_dict(),
            'old': self.old.to_dict() if self.old else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RowChange':
        old = data.get('old')
        return cls(
            event=data['event'],
            new=CallRecord.from_dict(data['new']),
            old=CallRecord.from_dict(old) if old else None,
        )


@dataclass
class CallHandle:
    """What initiate_call returns to the UI controller."""
    id: str
    room_id: str
    status: CallStatus
    peer_id: str = ''
    call_type: MediaKind = MediaKind.AUDIO


def generate_room_id(now: Optional[float] = None) -> str:
    """Room identifier: call_<epoch ms>_<9 base36 chars>."""
    now = time.time() if now is None else now
    alphabet = string.ascii_lowercase + string.digits
    suffix = ''.join(random.choice(alphabet) for _ in range(9))
    return f"call_{int(now * 1000)}_{suffix}"


def compute_duration(started_at: Optional[float], initiated_at: Optional[float],
                     ended_at: float) -> int:
    """
    Whole seconds between start and end of a call.

    Falls back to initiated_at when the call never started; clamps to 0
    when clocks disagree or neither timestamp is known.
    """
    start = started_at if started_at is not None else initiated_at
    if start is None:
        return 0
    return max(0, int(ended_at - start))
