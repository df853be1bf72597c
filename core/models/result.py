"""Explicit success/failure values threaded through the sync pipeline.

Retry decisions are made on these values instead of on raised exceptions.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, TypeVar, Union

from core.models.sync import ClassifiedError

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    error: ClassifiedError

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok, Err]


@dataclass
class JobOutcome:
    """What a successful sync attempt did."""
    detail: str                               # created, updated, unchanged, up-to-date, skipped-local-newer
    local_id: Optional[str] = None
    remote_id: Optional[str] = None
    remote_version: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
