"""Pydantic models describing bundle execution results."""

import time
from enum import StrEnum

from pydantic import BaseModel, Field


class ExecutionErrorKind(StrEnum):
    """Why a run unit (or a whole bundle run) failed.

    Provider failures are classified once, at the client boundary.
    """

    # Bundle-level guards
    MISSING_AGENT = "missing_agent"
    MISSING_OUTPUT = "missing_output"

    # Unit-level resolution
    UNCONNECTED = "unconnected"
    MISSING_VARIABLE = "missing_variable"

    # Provider classification
    PROVIDER_QUOTA_EXCEEDED = "provider_quota_exceeded"
    INVALID_CREDENTIAL = "invalid_credential"
    RATE_LIMITED = "rate_limited"
    TOOL_EXECUTION_FAILED = "tool_execution_failed"
    TIMED_OUT = "timed_out"
    UNKNOWN_PROVIDER_ERROR = "unknown_provider_error"

    CANCELLED = "cancelled"


class UnitStatus(StrEnum):
    """Run unit state machine: idle -> processing -> succeeded | failed."""

    IDLE = "idle"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (UnitStatus.SUCCEEDED, UnitStatus.FAILED)


class ResponseEnvelope(BaseModel):
    """Metadata attached to a successful unit's output node."""

    agent_title: str
    agent_id: str
    bundle: str
    used_tools: bool = False
    tool_call_count: int = 0
    model: str
    timestamp: float = Field(default_factory=time.time)


class UnitResult(BaseModel):
    """Terminal outcome of one agent -> output pairing."""

    agent_node_id: str
    output_node_id: str | None = None
    status: UnitStatus = UnitStatus.IDLE
    error_kind: ExecutionErrorKind | None = None
    error_message: str | None = None
    output: str | None = None
    attempts: int = 0


class BundleRunResult(BaseModel):
    """Outcome of one bundle run.

    A bundle run itself never fails; ``error`` is only set when the bundle
    guard rejected the run before any unit started.
    """

    bundle_id: int
    bundle_name: str
    error: ExecutionErrorKind | None = None
    units: list[UnitResult] = Field(default_factory=list)
    started_at: float = Field(default_factory=time.time)
    completed_at: float | None = None

    @property
    def succeeded(self) -> list[UnitResult]:
        return [u for u in self.units if u.status == UnitStatus.SUCCEEDED]

    @property
    def failed(self) -> list[UnitResult]:
        return [u for u in self.units if u.status == UnitStatus.FAILED]
