"""Outcome of routing one inbound message to the AI or to a human."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Result:
    """What routing did. A failed send is reported here instead of raised."""

    action: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error_code is None

    @classmethod
    def success(cls, action: str) -> "Result":
        return cls(action=action)

    @classmethod
    def from_exception(cls, exc: BaseException, code: str) -> "Result":
        return cls(error=str(exc) or exc.__class__.__name__, error_code=code)
