"""
Core data models
"""
from enum import Enum
from typing import Optional
from pydantic import BaseModel


class OutcomeKind(str, Enum):
    """Test case outcome"""

    PASSED = "passed"
    FAILED = "failed"
    ERRORED = "errored"
    SKIPPED = "skipped"


class Requirement(str, Enum):
    """What a test case needs from the active configuration"""

    UDP = "udp"  # plain NTP exchange
    NTS = "nts"  # NTS-protected NTP exchange with cookies and keys
    NTS_KE = "nts_ke"  # only a connection to the NTS-KE server


class Outcome(BaseModel):
    """Result of running (or skipping) one test case"""

    model_config = {"frozen": True}

    kind: OutcomeKind
    reason: Optional[str] = None
    detail: Optional[str] = None

    @classmethod
    def passed(cls) -> "Outcome":
        return cls(kind=OutcomeKind.PASSED)

    @classmethod
    def failed(cls, reason: str, detail: Optional[str] = None) -> "Outcome":
        return cls(kind=OutcomeKind.FAILED, reason=reason, detail=detail)

    @classmethod
    def errored(cls, cause: str, detail: Optional[str] = None) -> "Outcome":
        return cls(kind=OutcomeKind.ERRORED, reason=cause, detail=detail)

    @classmethod
    def skipped(cls, reason: str) -> "Outcome":
        return cls(kind=OutcomeKind.SKIPPED, reason=reason)


class ReportEntry(BaseModel):
    """One line of the report"""

    model_config = {"frozen": True}

    name: str
    outcome: Outcome
    duration_ms: Optional[float] = None
