"""
Shared Pydantic Types.

Records exchanged between the registry clients, the producers and the
enqueuer. All of them are immutable once built.
"""

from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .enums import ChangeKind


# =============================================================================
# Registry Records
# =============================================================================

# Change log position: an integer seq, or an opaque token from a clustered registry
Seq = Union[int, str]


def coerce_seq(value: Any) -> Seq:
    """
    Normalize a change log position.

    Integers and strings of digits become ints, so they can be compared.
    Any other non-empty string is kept as an opaque token.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        if value < 0:
            raise ValueError(f"seq must not be negative: {value}")
        return value
    if isinstance(value, str):
        token = value.strip()
        if token.isdecimal():
            return int(token)
        if token:
            return token
    raise ValueError(f"Unsupported seq value: {value!r}")


class ChangeEvent(BaseModel):
    """One entry of the registry change log."""
    model_config = ConfigDict(frozen=True)

    seq: Seq = Field(description="Position in the change log")
    name: str = Field(min_length=1, description="Package name")
    kind: ChangeKind = ChangeKind.UPDATED

    @field_validator("seq", mode="before")
    @classmethod
    def validate_seq(cls, v: Any) -> Seq:
        return coerce_seq(v)

    @property
    def is_design_doc(self) -> bool:
        """CouchDB design documents show up in the feed but are not packages."""
        return self.name.startswith("_design/")


class StaleCandidate(BaseModel):
    """A previously analyzed package whose result is older than the threshold."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    last_processed_at: Optional[datetime] = None


# =============================================================================
# Pipeline Reports
# =============================================================================

class ScanReport(BaseModel):
    """Outcome of one staleness scan pass."""
    found: int = 0
    enqueued: int = 0
    failed: bool = False
    fatal: bool = False
    error: Optional[str] = None
