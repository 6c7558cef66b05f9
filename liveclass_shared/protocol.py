"""Wire vocabulary shared by the live classroom client components.

Signaling travels over Socket.IO as (event name, JSON object) pairs while media
travels as UDP datagrams prefixed with a fixed-size header. This module
centralises event names, payload schemas and parsing helpers so the transports
and the session coordinator remain in sync.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

import jwt


class SignalingEvent(str, Enum):
    """Events exchanged with the signaling server."""

    JOIN_ROOM = "join-room"
    LEAVE_ROOM = "leave-room"
    SEND_CHAT = "send-chat"
    SET_PRESENCE = "set-presence"
    RAISE_HAND = "raise-hand"
    CHAT_MESSAGE = "chat-message"
    PARTICIPANT_JOINED = "participant-joined"
    PARTICIPANT_LEFT = "participant-left"
    SESSION_ENDED = "session-ended"
    FORCE_MUTE = "force-mute"
    FORCE_VIDEO = "force-video"
    FORCE_KICK = "force-kick"
    HAND_RAISE_ACK = "hand-raise-ack"
    SCREEN_SHARE_STATUS = "screen-share-status"
    ERROR = "error"


class RtcEvent(str, Enum):
    """Callbacks raised by an RTC (media transport) client."""

    USER_PUBLISHED = "user-published"
    USER_UNPUBLISHED = "user-unpublished"
    USER_LEFT = "user-left"
    CONNECTION_STATE_CHANGE = "connection-state-change"
    TOKEN_WILL_EXPIRE = "token-privilege-will-expire"


class MediaKind(str, Enum):
    AUDIO = "audio"
    VIDEO = "video"


class ConnectionState(str, Enum):
    """Connection lifecycle shared by the signaling channel and the media session."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"


class SessionStatus(str, Enum):
    SCHEDULED = "scheduled"
    LIVE = "live"
    ENDED = "ended"

    @classmethod
    def parse(cls, value: Any) -> "SessionStatus":
        text = str(value or "").strip().lower()
        if text in ("cancelled", "completed"):
            return cls.ENDED
        return cls(text)


class CameraFacing(str, Enum):
    FRONT = "front"
    BACK = "back"

    def opposite(self) -> "CameraFacing":
        return CameraFacing.BACK if self is CameraFacing.FRONT else CameraFacing.FRONT


class ParticipantStatus(str, Enum):
    ACTIVE = "active"
    REMOVED = "removed"


class Origin(str, Enum):
    """Who asked for a local state change."""

    LOCAL = "local"
    MODERATOR = "moderator"
    SERVER_ACK = "server_ack"


_MISSING = object()


def _first(data: Dict[str, Any], *keys: str, default: Any = _MISSING) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    if default is _MISSING:
        raise KeyError(keys[0])
    return default


def _identifier(value: Any) -> str:
    """Normalise ids that arrive as strings, numbers or populated ``{"_id": ...}`` objects."""
    if isinstance(value, dict):
        value = value.get("_id", value.get("id"))
    if value is None or isinstance(value, (bool, dict, list)):
        raise ValueError(f"Invalid identifier: {value!r}")
    text = str(value).strip()
    if not text:
        raise ValueError("Empty identifier")
    return text


def _flag(data: Dict[str, Any], *keys: str, default: Any = _MISSING) -> bool:
    value = _first(data, *keys, default=default)
    if not isinstance(value, bool):
        raise TypeError(f"Expected boolean for {keys[0]}, got {value!r}")
    return value


def _display_name(data: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = data.get(key)
        if isinstance(value, dict):
            value = value.get("name")
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def parse_timestamp(value: Any) -> float:
    """Return epoch seconds for numeric or ISO-8601 timestamps."""
    if isinstance(value, bool):
        raise TypeError("Boolean is not a timestamp")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    raise TypeError(f"Unsupported timestamp: {value!r}")


def _parse_many(factory, items: Any) -> list:
    parsed = []
    if not isinstance(items, list):
        return parsed
    for item in items:
        try:
            parsed.append(factory(item))
        except (KeyError, TypeError, ValueError):
            continue
    return parsed


@dataclass(frozen=True, slots=True)
class ChatMessage:
    """One chat log entry. Optimistic local copies carry no ``message_id``."""

    sender_id: str
    sender_name: str
    sender_role: str
    text: str
    timestamp: float
    message_id: Optional[str] = None

    @property
    def is_provisional(self) -> bool:
        return self.message_id is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.message_id,
            "senderId": self.sender_id,
            "senderName": self.sender_name,
            "senderRole": self.sender_role,
            "text": self.text,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        if not isinstance(data, dict):
            raise TypeError("Chat message must be an object")
        raw_id = _first(data, "id", "_id", default=None)
        text = _first(data, "text", "message")
        if not isinstance(text, str):
            raise TypeError("Chat text must be a string")
        role = _first(data, "senderRole", "userType", "role", default="")
        return cls(
            sender_id=_identifier(_first(data, "senderId", "sender", "userId")),
            sender_name=_display_name(data, "senderName", "userName", "userId"),
            sender_role=str(role).lower(),
            text=text,
            timestamp=parse_timestamp(_first(data, "timestamp", "ts")),
            message_id=_identifier(raw_id) if raw_id is not None else None,
        )


@dataclass(frozen=True, slots=True)
class MediaCredentials:
    """Credentials for joining the media room."""

    app_id: str
    token: str
    channel_name: str
    uid: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MediaCredentials":
        return cls(
            app_id=str(_first(data, "appId", "agoraAppId")),
            token=str(_first(data, "token", "agoraToken")),
            channel_name=str(_first(data, "channelName", "agoraChannelName")),
            uid=int(_first(data, "uid", "agoraUid")),
        )


@dataclass(slots=True)
class SessionInfo:
    """Read-only cached copy of the server-owned session record."""

    session_id: str
    status: SessionStatus
    title: str = ""
    teacher_id: Optional[str] = None
    teacher_name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.session_id,
            "status": self.status.value,
            "title": self.title,
            "teacherId": self.teacher_id,
            "teacherName": self.teacher_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionInfo":
        teacher = _first(data, "teacherId", "teacher", default=None)
        return cls(
            session_id=_identifier(_first(data, "id", "_id")),
            status=SessionStatus.parse(data.get("status")),
            title=_display_name(data, "title", "subjectId", "subject"),
            teacher_id=_identifier(teacher) if teacher is not None else None,
            teacher_name=_display_name(data, "teacherName", "teacherId", "teacher"),
        )


@dataclass(frozen=True, slots=True)
class Participant:
    user_id: str
    name: str = ""
    role: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.user_id, "name": self.name, "role": self.role}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Participant":
        if not isinstance(data, dict):
            raise TypeError("Participant must be an object")
        role = _first(data, "role", "userRole", "userType", default="")
        return cls(
            user_id=_identifier(_first(data, "id", "userId")),
            name=_display_name(data, "name", "userName", "userId"),
            role=str(role).lower(),
        )


@dataclass(slots=True)
class JoinResult:
    """Everything the join call hands to the coordinator."""

    credentials: MediaCredentials
    session: SessionInfo
    chat_backlog: List[ChatMessage] = field(default_factory=list)
    participants: List[Participant] = field(default_factory=list)
    signaling_url: Optional[str] = None
    unread_count: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JoinResult":
        if not isinstance(data, dict):
            raise TypeError("Join response must be an object")
        body = data["data"] if isinstance(data.get("data"), dict) else data
        if "mediaCredentials" in body:
            credentials = MediaCredentials.from_dict(body["mediaCredentials"])
            session_raw = body["session"]
            backlog_raw = body.get("chatBacklog")
        else:
            credentials = MediaCredentials.from_dict(body)
            session_raw = body["liveClass"]
            backlog_raw = session_raw.get("chatMessages")
        participants_raw = body.get("participants", session_raw.get("participants"))
        unread = body.get("unreadMessageCount")
        signaling_url = body.get("signalingEndpoint")
        return cls(
            credentials=credentials,
            session=SessionInfo.from_dict(session_raw),
            chat_backlog=_parse_many(ChatMessage.from_dict, backlog_raw),
            participants=_parse_many(Participant.from_dict, participants_raw),
            signaling_url=signaling_url if isinstance(signaling_url, str) and signaling_url else None,
            unread_count=int(unread) if isinstance(unread, int) and not isinstance(unread, bool) else None,
        )


@dataclass(frozen=True, slots=True)
class CameraDevice:
    device_id: str
    label: str = ""


@dataclass(frozen=True, slots=True)
class AuthCredential:
    """Bearer credential shared by the REST join call and the signaling handshake."""

    user_id: str
    token: str
    role: str = "student"

    @classmethod
    def from_token(cls, token: str, *, user_id: Optional[str] = None) -> "AuthCredential":
        """Build a credential, reading the user id from the token claims when not given.

        The signature is not verified here; the server does that on every call.
        """
        try:
            claims = jwt.decode(token, options={"verify_signature": False})
        except jwt.PyJWTError as exc:
            if user_id is None:
                raise ValueError("Token is not a readable JWT and no user id was given") from exc
            claims = {}
        resolved = user_id or claims.get("id") or claims.get("sub")
        if not resolved:
            raise ValueError("Token carries no user id claim")
        return cls(user_id=str(resolved), token=token, role=str(claims.get("role") or "student"))


@dataclass(frozen=True, slots=True)
class ChatReceived:
    message: ChatMessage


@dataclass(frozen=True, slots=True)
class ParticipantJoined:
    participant: Participant


@dataclass(frozen=True, slots=True)
class ParticipantLeft:
    user_id: str
    name: str = ""


@dataclass(frozen=True, slots=True)
class SessionEndedNotice:
    session_id: str


@dataclass(frozen=True, slots=True)
class ForceMute:
    user_id: str
    muted: bool


@dataclass(frozen=True, slots=True)
class ForceVideo:
    user_id: str
    video_enabled: bool


@dataclass(frozen=True, slots=True)
class ForceKick:
    user_id: str


@dataclass(frozen=True, slots=True)
class HandRaiseAck:
    raised: bool


@dataclass(frozen=True, slots=True)
class ScreenShareStatus:
    user_id: str
    sharing: bool


@dataclass(frozen=True, slots=True)
class ServerError:
    message: str


InboundAction = Union[
    ChatReceived,
    ParticipantJoined,
    ParticipantLeft,
    SessionEndedNotice,
    ForceMute,
    ForceVideo,
    ForceKick,
    HandRaiseAck,
    ScreenShareStatus,
    ServerError,
]

INBOUND_EVENTS = frozenset(
    {
        SignalingEvent.CHAT_MESSAGE,
        SignalingEvent.PARTICIPANT_JOINED,
        SignalingEvent.PARTICIPANT_LEFT,
        SignalingEvent.SESSION_ENDED,
        SignalingEvent.FORCE_MUTE,
        SignalingEvent.FORCE_VIDEO,
        SignalingEvent.FORCE_KICK,
        SignalingEvent.HAND_RAISE_ACK,
        SignalingEvent.SCREEN_SHARE_STATUS,
        SignalingEvent.ERROR,
    }
)


def parse_inbound_event(event: str, data: Any) -> Optional[InboundAction]:
    """Map a raw signaling event to a typed action.

    Returns ``None`` for events this client does not consume. Raises
    ``KeyError``, ``TypeError`` or ``ValueError`` when a consumed event carries
    an unexpected payload shape.
    """
    try:
        kind = SignalingEvent(event)
    except ValueError:
        return None
    if kind not in INBOUND_EVENTS:
        return None
    if not isinstance(data, dict):
        raise TypeError(f"{event} payload must be an object, got {type(data).__name__}")

    if kind is SignalingEvent.CHAT_MESSAGE:
        message = ChatMessage.from_dict(data)
        if message.is_provisional:
            raise ValueError("chat-message broadcast without a permanent id")
        return ChatReceived(message)
    if kind is SignalingEvent.PARTICIPANT_JOINED:
        return ParticipantJoined(Participant.from_dict(data))
    if kind is SignalingEvent.PARTICIPANT_LEFT:
        return ParticipantLeft(
            user_id=_identifier(_first(data, "id", "userId")),
            name=_display_name(data, "name", "userName"),
        )
    if kind is SignalingEvent.SESSION_ENDED:
        return SessionEndedNotice(_identifier(_first(data, "sessionId", "liveClassId")))
    if kind is SignalingEvent.FORCE_MUTE:
        return ForceMute(
            user_id=_identifier(_first(data, "userId")),
            muted=_flag(data, "muted", "isMuted", default=True),
        )
    if kind is SignalingEvent.FORCE_VIDEO:
        return ForceVideo(
            user_id=_identifier(_first(data, "userId")),
            video_enabled=_flag(data, "videoEnabled", "isVideoEnabled"),
        )
    if kind is SignalingEvent.FORCE_KICK:
        return ForceKick(_identifier(_first(data, "userId")))
    if kind is SignalingEvent.HAND_RAISE_ACK:
        return HandRaiseAck(_flag(data, "raised", "hasRaisedHand"))
    if kind is SignalingEvent.SCREEN_SHARE_STATUS:
        return ScreenShareStatus(
            user_id=_identifier(_first(data, "userId")),
            sharing=_flag(data, "isSharing", "sharing"),
        )
    message = _first(data, "message")
    if not isinstance(message, str):
        raise TypeError("error message must be a string")
    return ServerError(message)


def dedupe_backlog(messages: Iterable[ChatMessage]) -> List[ChatMessage]:
    """Drop repeated backlog entries: by permanent id, or by (sender, text, timestamp) for id-less ones."""
    seen_ids = set()
    seen_content = set()
    unique: List[ChatMessage] = []
    for message in messages:
        if message.message_id is not None:
            if message.message_id in seen_ids:
                continue
            seen_ids.add(message.message_id)
        else:
            key = (message.sender_id, message.text, message.timestamp)
            if key in seen_content:
                continue
            seen_content.add(key)
        unique.append(message)
    return unique


MEDIA_HEADER_STRUCT = struct.Struct("!IIfI")


class PayloadType(Enum):
    """Indicates the content type carried in a UDP media payload."""

    VIDEO = 1
    AUDIO = 2


@dataclass(slots=True)
class MediaFrameHeader:
    """Header carried before every UDP media frame."""

    stream_id: int
    sequence_number: int
    timestamp_ms: float
    payload_type: int

    def pack(self) -> bytes:
        return MEDIA_HEADER_STRUCT.pack(
            self.stream_id,
            self.sequence_number,
            self.timestamp_ms,
            self.payload_type,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "MediaFrameHeader":
        stream_id, sequence_number, timestamp_ms, payload_type = MEDIA_HEADER_STRUCT.unpack(data)
        return cls(stream_id, sequence_number, timestamp_ms, payload_type)


DEFAULT_API_BASE_URL = "http://localhost:5000/api"
DEFAULT_MEDIA_HOST = "127.0.0.1"
DEFAULT_MEDIA_PORT = 56000
SOCKETIO_PATH = "socket.io"
