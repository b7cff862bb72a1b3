"""
Data models for the media relay service.

Defines partitions, relay requests, sink descriptors and relay outcomes.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from ..utils.exceptions import RequestValidationError


class Partition(Enum):
    """Content sensitivity classes; each maps to its own set of sinks."""

    GENERAL = "general"         # safe content
    RESTRICTED = "restricted"   # not-safe-for-work content

    @classmethod
    def for_sensitive(cls, sensitive: bool) -> 'Partition':
        return cls.RESTRICTED if sensitive else cls.GENERAL


class SinkKind(Enum):
    """How a sink reaches its backend."""

    PROCESS = "process"   # external transfer tool (uplink)
    SDK = "sdk"           # S3 SDK client (boto3)
    HTTP = "http"         # REST worker endpoint (renterd)


def _require_str(data: dict, name: str) -> str:
    value = data.get(name)
    if not isinstance(value, str) or not value:
        raise RequestValidationError(f"'{name}' must be a non-empty string")
    if '/' in value or value in ('.', '..'):
        raise RequestValidationError(f"'{name}' must not contain path separators")
    return value


def _require_bool(data: dict, name: str) -> bool:
    value = data.get(name)
    if not isinstance(value, bool):
        raise RequestValidationError(f"'{name}' must be a boolean")
    return value


def parse_metadata(value: Any) -> dict:
    """
    Validate a string-to-string metadata mapping.

    Raises:
        RequestValidationError: If value is not a flat mapping of strings
    """
    if not isinstance(value, dict):
        raise RequestValidationError("'metadata' must be an object")
    for k, v in value.items():
        if not isinstance(k, str) or not isinstance(v, str):
            raise RequestValidationError("'metadata' keys and values must be strings")
    return dict(value)


def parse_flag(value: Optional[str], name: str) -> bool:
    """Parse a 'true'/'false' query parameter."""
    if value is None:
        raise RequestValidationError(f"Missing query parameter '{name}'")
    lowered = value.lower()
    if lowered not in ('true', 'false'):
        raise RequestValidationError(f"'{name}' must be 'true' or 'false'")
    return lowered == 'true'


def video_key(owner_id: str, object_id: str) -> str:
    """Object key of a relayed video: <owner>/<object>.mp4"""
    return f"{owner_id}/{object_id}.mp4"


@dataclass(frozen=True)
class RelayRequest:
    """
    Identifies what to fetch from the origin and where it is filed.

    Created per incoming request; never persisted.
    """

    owner_id: str
    object_id: str
    sensitive: bool = False
    metadata: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: Any) -> 'RelayRequest':
        """
        Build from a /duplicate JSON body.

        Raises:
            RequestValidationError: If a field is missing or has the wrong type
        """
        if not isinstance(data, dict):
            raise RequestValidationError("Request body must be a JSON object")

        if 'metadata' not in data:
            raise RequestValidationError("'metadata' is required")

        return cls(
            owner_id=_require_str(data, 'publisher_user_id'),
            object_id=_require_str(data, 'video_id'),
            sensitive=_require_bool(data, 'is_nsfw'),
            metadata=parse_metadata(data['metadata']),
        )

    @property
    def partition(self) -> Partition:
        return Partition.for_sensitive(self.sensitive)

    @property
    def object_key(self) -> str:
        return video_key(self.owner_id, self.object_id)


@dataclass(frozen=True)
class CachedToken:
    """A backend session token and the monotonic time it stops being used."""

    token: str
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


@dataclass(frozen=True)
class SinkDescriptor:
    """
    Resolved once at startup per backend and partition; immutable afterward.
    """

    name: str
    kind: SinkKind
    destination_root: str
    credential: str = field(default='', repr=False, compare=False)

    def __str__(self) -> str:
        return f"{self.name} ({self.kind.value}:{self.destination_root})"


@dataclass(frozen=True)
class RelayOutcome:
    """
    Per-sink result of one relay; produced once and never mutated.

    `failed` preserves the order in which failures were observed.
    """

    succeeded: frozenset = frozenset()
    failed: Mapping[SinkDescriptor, Exception] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, 'succeeded', frozenset(self.succeeded))
        object.__setattr__(self, 'failed', MappingProxyType(dict(self.failed)))

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def partial(self) -> bool:
        """Some sinks hold the object while others failed."""
        return bool(self.succeeded) and bool(self.failed)

    @property
    def first_error(self) -> Optional[Exception]:
        return next(iter(self.failed.values()), None)

    def to_dict(self) -> dict:
        """Convert to dictionary for logging."""
        return {
            'succeeded': sorted(d.name for d in self.succeeded),
            'failed': {d.name: str(e) for d, e in self.failed.items()},
        }
