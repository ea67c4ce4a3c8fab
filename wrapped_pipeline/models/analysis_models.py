from dataclasses import dataclass, field
from enum import Enum
from typing import List, Dict, Optional, Any
import time

CATEGORIES = ("popularTokens", "popularActions", "popularUsers", "otherStories")


class JobStage(str, Enum):
    FETCHING = "fetching"
    ANALYZING = "analyzing"
    CONSOLIDATING = "consolidating"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStage.COMPLETE, JobStage.FAILED)


class RunOutcome(str, Enum):
    CACHED = "cached"
    STARTED = "started"
    ALREADY_RUNNING = "already_running"


@dataclass
class Transaction:
    hash: str
    timestamp: int
    description: str
    category: str
    tags: List[str] = field(default_factory=list)
    from_user: str = ""
    to_user: str = ""
    value: str = "0"
    raw: Optional[Dict] = None

    def to_dict(self) -> Dict:
        return {
            "hash": self.hash,
            "timestamp": self.timestamp,
            "description": self.description,
            "category": self.category,
            "tags": list(self.tags),
            "fromUser": self.from_user,
            "toUser": self.to_user,
            "value": self.value,
            "raw": self.raw,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Transaction":
        return cls(
            hash=data.get("hash", ""),
            timestamp=data.get("timestamp", 0),
            description=data.get("description", ""),
            category=data.get("category", ""),
            tags=list(data.get("tags") or []),
            from_user=data.get("fromUser", ""),
            to_user=data.get("toUser", ""),
            value=data.get("value", "0"),
            raw=data.get("raw"),
        )


@dataclass
class BatchAnalysis:
    popular_tokens: List[Any] = field(default_factory=list)
    popular_actions: List[Any] = field(default_factory=list)
    popular_users: List[Any] = field(default_factory=list)
    other_stories: List[Any] = field(default_factory=list)

    def to_dict(self) -> Dict[str, List[Any]]:
        return {
            "popularTokens": list(self.popular_tokens),
            "popularActions": list(self.popular_actions),
            "popularUsers": list(self.popular_users),
            "otherStories": list(self.other_stories),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "BatchAnalysis":
        """Build from a provider payload, dropping anything that is not a list"""
        values = []
        for category in CATEGORIES:
            value = data.get(category)
            values.append(list(value) if isinstance(value, list) else [])
        return cls(*values)

    def is_empty(self) -> bool:
        return not any(self.to_dict().values())


@dataclass
class ConsolidatedAnalysis(BatchAnalysis):
    @classmethod
    def no_activity(cls) -> "ConsolidatedAnalysis":
        return cls(other_stories=[{
            "name": "No Activity Found",
            "stat": "0 transactions",
            "description": (
                "We couldn't find any transactions for this address on Base "
                "in 2024. This could mean you haven't made any transactions "
                "yet, or you might be using a different address."
            ),
            "category": "info",
        }])


@dataclass
class ChunkProgress:
    current: int = 0
    total: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"current": self.current, "total": self.total}


@dataclass
class Job:
    address: str
    fid: Optional[int] = None
    stage: JobStage = JobStage.FETCHING
    progress: ChunkProgress = field(default_factory=ChunkProgress)
    retry_count: int = 0
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    result: Optional[Dict] = None
    error: Optional[str] = None
    failed_stage: Optional[JobStage] = None

    @property
    def is_terminal(self) -> bool:
        return self.stage.is_terminal

    def _touch(self):
        self.updated_at = time.time()

    def _ensure_open(self):
        if self.is_terminal:
            raise RuntimeError(
                f"job for {self.address} is already {self.stage.value}")

    def advance(self, stage: JobStage):
        self._ensure_open()
        self.stage = stage
        self._touch()

    def record_progress(self, done: int, total: int):
        # Batches complete out of order; only ever move forward
        self.progress = ChunkProgress(
            current=max(self.progress.current, done), total=total)
        self._touch()

    def record_retry(self):
        self.retry_count += 1
        self._touch()

    def complete(self, result: Dict):
        self._ensure_open()
        self.stage = JobStage.COMPLETE
        self.result = result
        self._touch()

    def fail(self, error: str):
        self._ensure_open()
        self.failed_stage = self.stage
        self.stage = JobStage.FAILED
        self.error = error
        self._touch()


@dataclass
class RunResult:
    outcome: RunOutcome
    address: str
    job: Optional[Job] = None
    result: Optional[Dict] = None
