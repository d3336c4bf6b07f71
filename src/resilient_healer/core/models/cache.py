from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .failed_test import FailureType


@dataclass
class CacheEntry:
    """A cached repair outcome."""

    key: str
    value: Any
    created_at: datetime
    last_accessed_at: datetime
    expires_at: datetime
    ttl: float
    access_count: int = 0
    size: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "created_at": self.created_at.isoformat(),
            "last_accessed_at": self.last_accessed_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "ttl": self.ttl,
            "access_count": self.access_count,
            "size": self.size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        created_at = datetime.fromisoformat(data["created_at"])
        ttl = float(data.get("ttl", 0))
        expires_at = (
            datetime.fromisoformat(data["expires_at"])
            if data.get("expires_at")
            else created_at + timedelta(seconds=ttl)
        )
        return cls(
            key=data["key"],
            value=data.get("value"),
            created_at=created_at,
            last_accessed_at=datetime.fromisoformat(
                data.get("last_accessed_at") or data["created_at"]
            ),
            expires_at=expires_at,
            ttl=ttl,
            access_count=int(data.get("access_count", 0)),
            size=int(data.get("size", 0)),
        )


@dataclass(frozen=True)
class CacheKeyContext:
    """Inputs that identify an interchangeable repair."""

    failure_type: FailureType
    spec_diff_hash: str
    test_code_hash: str
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CacheStatistics:
    total_entries: int
    hits: int
    misses: int
    hit_rate: float
    total_size: int
    average_size: float
    oldest_entry_age: float  # seconds
    evictions: int
    expired: int
    effectiveness: float
    estimated_savings: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass(frozen=True)
class HealingContext:
    """Everything a regenerator needs to repair one failed test."""

    failure_type: FailureType
    test_code: str
    error_message: str = ""
    spec_diff: Optional[Dict[str, Any]] = None
    test_id: Optional[str] = None
    test_name: Optional[str] = None
    file_path: Optional[str] = None
    root_cause: Optional[str] = None
    suggested_fix: Optional[str] = None
