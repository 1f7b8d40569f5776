"""Queue data models."""
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Dict, Any, Optional

# Queue entry statuses
WAITING = "waiting"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

QUEUE_STATUSES = (WAITING, PROCESSING, COMPLETED, FAILED)

# Phone number (call target) statuses
NUMBER_PENDING = "pending"
NUMBER_QUEUED = "queued"
NUMBER_CALLING = "calling"
NUMBER_COMPLETED = "completed"
NUMBER_FAILED = "failed"

# Call record statuses; only "initiated" is set here, the rest belong to call monitoring
CALL_INITIATED = "initiated"
CALL_IN_PROGRESS = "in-progress"
CALL_PROCESSING = "processing"
CALL_DONE = "done"
CALL_FAILED = "failed"


@dataclass
class QueueEntry:
    """One phone number waiting to be called with a given agent."""
    
    id: int
    phone_number_id: int
    agent_id: int
    status: str = WAITING
    priority: int = 0
    retry_count: int = 0
    max_retries: int = 3
    error_message: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    
    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "QueueEntry":
        """Build an entry from a database row, ignoring unknown columns."""
        fields = cls.__dataclass_fields__
        return cls(**{key: value for key, value in row.items() if key in fields})
    
    @property
    def retries_exhausted(self) -> bool:
        return self.retry_count >= self.max_retries
    
    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Agent:
    """Calling configuration: a provider agent plus the caller phone number it dials from."""
    
    id: int
    agent_id: str  # ElevenLabs agent ID
    phone_number_id: str  # ElevenLabs phone number ID used as caller
    name: str
    is_active: bool = True
    
    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Agent":
        fields = cls.__dataclass_fields__
        return cls(**{key: value for key, value in row.items() if key in fields})


@dataclass
class PhoneNumber:
    """A call target uploaded from a contact list."""
    
    id: int
    phone: str
    status: str = NUMBER_PENDING
    last_call_id: Optional[int] = None
    call_count: int = 0
    
    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PhoneNumber":
        fields = cls.__dataclass_fields__
        return cls(**{key: value for key, value in row.items() if key in fields})


@dataclass
class CallHandle:
    """What the calling provider returns for an accepted outbound call."""
    
    conversation_id: Optional[str]
    call_sid: Optional[str] = None


@dataclass
class CallRecord:
    """Call created after a successful dispatch; later updated by call monitoring."""
    
    id: int
    agent_id: int
    to_number: str
    conversation_id: Optional[str] = None
    call_sid: Optional[str] = None
    phone_number_id: Optional[int] = None
    status: str = CALL_INITIATED
    created_at: Optional[datetime] = None
    
    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CallRecord":
        fields = cls.__dataclass_fields__
        return cls(**{key: value for key, value in row.items() if key in fields})


@dataclass(frozen=True)
class WorkerPoolState:
    """Read-only snapshot of the queue processor."""
    
    is_running: bool
    is_paused: bool
    active_workers: int
    max_concurrent: int
    max_allowed: int
    
    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
