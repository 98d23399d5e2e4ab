import enum
import struct
from dataclasses import dataclass

"""
messages.py — the unit that flows through a framed channel.

Every inbound or outbound WebSocket message becomes one `Message`: a type tag
plus the raw payload bytes. Text payloads are kept as UTF-8 bytes so the relay
can hand back exactly what it received; close payloads carry the 2-byte close
code followed by the UTF-8 reason, the same layout as on the wire.
"""


class MessageType(enum.Enum):
    TEXT = "text"
    BINARY = "binary"
    PING = "ping"
    PONG = "pong"
    CLOSE = "close"


# Data frames carry application payloads; everything else is protocol control.
DATA_TYPES = frozenset({MessageType.TEXT, MessageType.BINARY})

CLOSE_CODE = struct.Struct("!H")


@dataclass(frozen=True)
class Message:
    type: MessageType
    payload: bytes = b""

    # -----------------------
    # Constructors
    # -----------------------

    @classmethod
    def text(cls, data: str) -> "Message":
        return cls(MessageType.TEXT, data.encode("utf-8"))

    @classmethod
    def binary(cls, data: bytes) -> "Message":
        return cls(MessageType.BINARY, bytes(data))

    @classmethod
    def ping(cls, data: bytes = b"") -> "Message":
        return cls(MessageType.PING, bytes(data))

    @classmethod
    def pong(cls, data: bytes = b"") -> "Message":
        return cls(MessageType.PONG, bytes(data))

    @classmethod
    def close(cls, code: int = 1000, reason: str = "") -> "Message":
        return cls(MessageType.CLOSE, CLOSE_CODE.pack(code) + reason.encode("utf-8"))

    # -----------------------
    # Type checks
    # -----------------------

    @property
    def is_text(self) -> bool:
        return self.type is MessageType.TEXT

    @property
    def is_binary(self) -> bool:
        return self.type is MessageType.BINARY

    @property
    def is_control(self) -> bool:
        return self.type not in DATA_TYPES

    # -----------------------
    # Payload views
    # -----------------------

    def as_text(self) -> str:
        """Decode a text payload. Raises UnicodeDecodeError on anything else."""
        return self.payload.decode("utf-8")

    def close_code(self) -> int:
        """Close code carried by a CLOSE message (1005 when none was sent)."""
        if self.type is not MessageType.CLOSE:
            raise ValueError(f"{self.type.value} message has no close code")
        if len(self.payload) < CLOSE_CODE.size:
            return 1005
        (code,) = CLOSE_CODE.unpack_from(self.payload)
        return code

    def close_reason(self) -> str:
        if self.type is not MessageType.CLOSE:
            raise ValueError(f"{self.type.value} message has no close reason")
        return self.payload[CLOSE_CODE.size:].decode("utf-8", "replace")

    def __repr__(self) -> str:
        # Keep log lines short; payloads can be large.
        return f"<Message {self.type.value} {len(self.payload)} bytes>"
