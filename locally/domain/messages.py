from __future__ import annotations

from enum import Enum, IntEnum


class MessageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    ABANDONED = "abandoned"


TERMINAL_STATUSES = frozenset(
    {MessageStatus.COMPLETED, MessageStatus.FAILED, MessageStatus.ABANDONED}
)


class MessagePriority(IntEnum):
    LOW = 0
    NORMAL = 1
    HIGH = 2
    URGENT = 3


class MessageEventType(str, Enum):
    CREATED = "created"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    ABANDONED = "abandoned"
    RECOVERED = "recovered"
