"""Queue job records and job options.

A Job is the unit stored by a JobQueue. Everything in here is
JSON-serializable so the Redis backend can keep one hash per job.
"""

import json
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Any, Optional


class JobState(str, Enum):
    """Queue-level job states.

    State transitions:
        WAITING -> ACTIVE -> COMPLETED
                          -> FAILED
                          -> DELAYED (retry with backoff) -> WAITING
        DELAYED (scheduled with delay) -> WAITING
        PAUSED (queue paused, job not yet dispatched)
    """
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


FINISHED_STATES = frozenset([JobState.COMPLETED, JobState.FAILED])


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Backoff:
    """Delay policy between automatic retry attempts.

    fixed:       delay
    exponential: delay * 2 ^ (attempts_made - 1)
    """
    type: str = "exponential"
    delay: int = 1000  # milliseconds

    def compute_delay(self, attempts_made: int) -> int:
        """Delay in milliseconds before the next attempt.

        Args:
            attempts_made: Attempts already made, including the one that just failed (1-indexed)
        """
        if self.type == "fixed":
            return self.delay
        return int(self.delay * (2 ** max(attempts_made - 1, 0)))

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "delay": self.delay}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Backoff":
        return cls(type=data.get("type", "exponential"), delay=int(data.get("delay", 1000)))


@dataclass
class JobOptions:
    """Per-job options. Unset fields fall back to the queue defaults.

    priority: 1-10, 10 is highest.
    remove_on_complete / remove_on_fail: keep only the last N finished jobs.
    """
    priority: int = 5
    delay: int = 0  # milliseconds
    attempts: Optional[int] = None
    backoff: Optional[Backoff] = None
    remove_on_complete: Optional[int] = None
    remove_on_fail: Optional[int] = None

    def __post_init__(self):
        if not 1 <= self.priority <= 10:
            raise ValueError(f"Job priority must be between 1 and 10, got {self.priority}")
        if self.delay < 0:
            raise ValueError("Job delay must be >= 0")
        if self.attempts is not None and self.attempts < 1:
            raise ValueError("Job attempts must be >= 1")

    def with_defaults(self, defaults: "JobOptions") -> "JobOptions":
        """Fill unset fields from queue-level defaults."""
        return replace(
            self,
            attempts=self.attempts if self.attempts is not None else (defaults.attempts or 1),
            backoff=self.backoff if self.backoff is not None else defaults.backoff,
            remove_on_complete=(self.remove_on_complete if self.remove_on_complete is not None
                                else defaults.remove_on_complete),
            remove_on_fail=(self.remove_on_fail if self.remove_on_fail is not None
                            else defaults.remove_on_fail),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "priority": self.priority,
            "delay": self.delay,
            "attempts": self.attempts,
            "backoff": self.backoff.to_dict() if self.backoff else None,
            "removeOnComplete": self.remove_on_complete,
            "removeOnFail": self.remove_on_fail,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobOptions":
        backoff = data.get("backoff")
        return cls(
            priority=data.get("priority", 5),
            delay=data.get("delay", 0),
            attempts=data.get("attempts"),
            backoff=Backoff.from_dict(backoff) if backoff else None,
            remove_on_complete=data.get("removeOnComplete"),
            remove_on_fail=data.get("removeOnFail"),
        )


@dataclass
class Job:
    """A job stored in a queue.

    The id doubles as the execution id for workflow jobs.
    """
    id: str
    name: str
    data: Dict[str, Any]
    opts: JobOptions = field(default_factory=JobOptions)
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    timestamp: int = field(default_factory=now_ms)
    processed_on: Optional[int] = None
    finished_on: Optional[int] = None
    failed_reason: Optional[str] = None
    return_value: Any = None

    @property
    def is_finished(self) -> bool:
        return self.state in FINISHED_STATES

    @property
    def max_attempts(self) -> int:
        return self.opts.attempts or 1

    def retry_delay(self) -> int:
        """Backoff before the next attempt, in milliseconds."""
        if self.opts.backoff is None:
            return 0
        return self.opts.backoff.compute_delay(self.attempts_made)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "data": self.data,
            "opts": self.opts.to_dict(),
            "state": self.state.value,
            "attemptsMade": self.attempts_made,
            "timestamp": self.timestamp,
            "processedOn": self.processed_on,
            "finishedOn": self.finished_on,
            "failedReason": self.failed_reason,
            "returnValue": self.return_value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            data=data.get("data") or {},
            opts=JobOptions.from_dict(data.get("opts") or {}),
            state=JobState(data.get("state", JobState.WAITING.value)),
            attempts_made=data.get("attemptsMade", 0),
            timestamp=data.get("timestamp") or now_ms(),
            processed_on=data.get("processedOn"),
            finished_on=data.get("finishedOn"),
            failed_reason=data.get("failedReason"),
            return_value=data.get("returnValue"),
        )

    # Redis hash encoding: every field is stored as a JSON string

    def to_hash(self) -> Dict[str, str]:
        return {k: json.dumps(v) for k, v in self.to_dict().items()}

    @classmethod
    def from_hash(cls, mapping: Dict[str, str]) -> "Job":
        return cls.from_dict({k: json.loads(v) for k, v in mapping.items()})
