# ==============================
# Error Taxonomy
# ==============================
"""
Exceptions raised across runledger/.

Groups:
- RunLedgerError subclasses: input/state errors rejected before any step runs.
  Each carries a stable `code` used by RunOperationResult envelopes.
- GatePause / RunCancelled: control signals, never reported as step failures.
- Agent errors: transport failures vs. schema failures (the resilience wrapper
  only repairs the latter).
- Worker errors: isolated worker channel failure modes.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


# ==============================
# Ledger / Input Errors
# ==============================
class RunLedgerError(Exception):
    code = "internal_error"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class RunNotFoundError(RunLedgerError):
    code = "not_found"

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run not found: {run_id}", details={"run_id": run_id})
        self.run_id = run_id


class ArtifactNotFoundError(RunLedgerError):
    code = "not_found"

    def __init__(self, run_id: str, name: str) -> None:
        super().__init__(f"Artifact not found: {run_id}/{name}", details={"run_id": run_id, "name": name})


class InvalidTransitionError(RunLedgerError):
    code = "invalid_state"


class RunIdAllocationError(RunLedgerError):
    code = "internal_error"


class UnsafeArtifactNameError(RunLedgerError):
    code = "invalid_input"

    def __init__(self, name: str) -> None:
        super().__init__(f"Unsafe artifact name: {name!r}", details={"name": name})
        self.name = name


class MissingArtifactError(RunLedgerError):
    code = "missing_artifact"


class InvalidInputError(RunLedgerError):
    code = "invalid_input"


class RunConflictError(RunLedgerError):
    code = "conflict"


class GateConflictError(RunConflictError):
    pass


# ==============================
# Control Signals
# ==============================
class GatePause(Exception):
    """
    Raised by step functions that prefer signals over returning Paused.
    Not a failure: the scheduler leaves the run paused.
    """

    def __init__(self, gate_id: str, resume_from: str, message: str) -> None:
        super().__init__(message)
        self.gate_id = gate_id
        self.resume_from = resume_from
        self.message = message


class RunCancelled(Exception):
    def __init__(self, reason: str = "Cancelled") -> None:
        super().__init__(reason)
        self.reason = reason


# ==============================
# Agent Errors
# ==============================
class AgentTransportError(Exception):
    """Infrastructure failure of an agent call (network, provider, crash)."""


class SchemaValidationError(Exception):
    def __init__(self, failure: Any) -> None:
        super().__init__(getattr(failure, "message", str(failure)))
        self.failure = failure


# ==============================
# Worker Errors
# ==============================
class WorkerError(Exception):
    pass


class WorkerTimeoutError(WorkerError):
    pass


class WorkerExitedError(WorkerError):
    def __init__(self, message: str, *, exitcode: Optional[int] = None) -> None:
        super().__init__(message)
        self.exitcode = exitcode


class WorkerChannelError(WorkerError):
    pass


class WorkerCallError(WorkerError):
    pass


class WorkerAborted(WorkerError):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason
