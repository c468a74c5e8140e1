"""
Progress event schema.

Events are transient: built by the aggregator, fanned out by the hub and
serialized to JSON for the wire. Nothing here touches the database.
"""

import json
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional

from django.utils import timezone

SUBJECT_JOB = 'job'
SUBJECT_COLLECTION = 'collection'

JOB_TERMINAL_STATUSES = frozenset({'completed', 'failed'})
COLLECTION_TERMINAL_STATUSES = frozenset({'completed', 'completed_with_errors'})


def _now_iso() -> str:
    return timezone.now().isoformat()


@dataclass
class ProgressEvent:
    """A progress update for one job or one collection."""

    subject_id: str
    subject_kind: str
    status: str
    percent: int
    stage: str = ''
    timestamp: str = field(default_factory=_now_iso)
    error: Optional[Dict[str, str]] = None
    # Context so clients can route events without another lookup
    project_id: Optional[str] = None
    collection_id: Optional[str] = None
    url: Optional[str] = None
    image_path: Optional[str] = None
    # Collection counters
    total_expected: Optional[int] = None
    completed_count: Optional[int] = None
    failed_count: Optional[int] = None

    def __post_init__(self):
        if self.subject_kind not in (SUBJECT_JOB, SUBJECT_COLLECTION):
            raise ValueError(f"Unknown subject kind: {self.subject_kind}")
        self.subject_id = str(self.subject_id)
        self.percent = max(0, min(100, int(self.percent)))

    @property
    def is_terminal(self) -> bool:
        if self.subject_kind == SUBJECT_JOB:
            return self.status in JOB_TERMINAL_STATUSES
        return self.status in COLLECTION_TERMINAL_STATUSES

    @property
    def key(self):
        return (self.subject_kind, self.subject_id)

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ProgressEvent':
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_json(cls, raw) -> 'ProgressEvent':
        return cls.from_dict(json.loads(raw))
