"""Typed errors raised by the upgrade engine.

Every phase-level failure is an `UpgradeError` carrying a category and a
`terminal` flag. Terminal errors move the record to `failed`; the others
leave it at its last checkpoint so a later resume can pick it up.
"""

from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    TRANSIENT = "transient"
    INVALID_INPUT = "invalid_input"
    EXTERNAL_REJECTION = "external_rejection"
    TIMEOUT = "timeout"
    INCONSISTENT = "inconsistent"
    CORRUPT_STATE = "corrupt_state"


class UpgradeError(Exception):
    """Base class for upgrade workflow errors."""

    category: ErrorCategory = ErrorCategory.TRANSIENT
    terminal: bool = False


# --- transient -------------------------------------------------------------


class ChainUnavailable(UpgradeError):
    """Chain RPC endpoint could not be reached or answered with a server error."""


class NodeUnavailable(UpgradeError):
    """Process layer could not reach a node."""


class ExportFailed(UpgradeError):
    """Genesis export did not produce a snapshot."""


# --- invalid input ---------------------------------------------------------


class InvalidSpec(UpgradeError):
    category = ErrorCategory.INVALID_INPUT
    terminal = True


class ActiveUpgradeExists(UpgradeError):
    """A non-terminal record already exists for the devnet."""

    category = ErrorCategory.INVALID_INPUT
    terminal = True

    def __init__(self, devnet_key: str, phase: str):
        self.devnet_key = devnet_key
        self.phase = phase
        super().__init__(
            f"Devnet {devnet_key} already has an active upgrade (phase: {phase}); "
            f"resume or cancel it first"
        )


# --- external rejection ----------------------------------------------------


class ProposalRejectedAtSubmission(UpgradeError):
    """The chain refused the proposal transaction (e.g. insufficient deposit)."""

    category = ErrorCategory.EXTERNAL_REJECTION
    terminal = True


class VotingClosed(UpgradeError):
    """The proposal already left its voting period."""

    category = ErrorCategory.EXTERNAL_REJECTION
    terminal = True


class NodeUnhealthy(UpgradeError):
    """A node kept reporting unhealthy past the consecutive-failure threshold."""

    category = ErrorCategory.EXTERNAL_REJECTION
    terminal = True


# --- timeout ---------------------------------------------------------------


class PhaseTimeout(UpgradeError):
    """A phase action exceeded its deadline."""

    category = ErrorCategory.TIMEOUT

    def __init__(self, phase: str, timeout: float, detail: str = ""):
        self.phase = phase
        self.timeout = timeout
        message = f"Phase {phase} exceeded its {timeout:.0f}s deadline"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class HeightTimeout(PhaseTimeout):
    """The chain never reached the upgrade height."""

    terminal = True


# --- inconsistent ----------------------------------------------------------


class InconsistentStateError(UpgradeError):
    """Observed chain state is behind the persisted record."""

    category = ErrorCategory.INCONSISTENT
    terminal = True


class PartialSwitchError(UpgradeError):
    """Some nodes could not be switched; requires manual remediation."""

    category = ErrorCategory.INCONSISTENT
    terminal = True

    def __init__(self, failures: dict[str, str], switched: list[str]):
        self.failures = failures
        self.switched = switched
        details = ", ".join(f"{node}: {err}" for node, err in sorted(failures.items()))
        super().__init__(
            f"Binary switch failed on {len(failures)} node(s) "
            f"({len(switched)} switched): {details}"
        )


# --- persisted state -------------------------------------------------------


class CorruptStateError(UpgradeError):
    """A persisted record could not be read back."""

    category = ErrorCategory.CORRUPT_STATE
    terminal = True

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Upgrade state file {path} is corrupted: {reason}")


# --- programming / concurrency errors -------------------------------------


class InvalidTransition(Exception):
    """A phase transition outside the fixed table was requested."""

    def __init__(self, from_phase: str, outcome: Optional[str] = None, to_phase: Optional[str] = None):
        self.from_phase = from_phase
        self.outcome = outcome
        self.to_phase = to_phase
        if to_phase is not None:
            message = f"Invalid phase transition: {from_phase} -> {to_phase}"
        else:
            message = f"Invalid phase transition from {from_phase} on outcome {outcome}"
        super().__init__(message)


class UpgradeInProgress(Exception):
    """Another orchestration pass holds the devnet."""

    def __init__(self, devnet_key: str):
        self.devnet_key = devnet_key
        super().__init__(f"An upgrade pass is already running for devnet {devnet_key}")


class UpgradeNotFound(Exception):
    def __init__(self, devnet_key: str):
        self.devnet_key = devnet_key
        super().__init__(f"No upgrade record found for devnet {devnet_key}")


class ResumeAggregateError(Exception):
    """One or more resumes failed; `errors` maps devnet key to exception."""

    def __init__(self, errors: dict[str, BaseException]):
        self.errors = errors
        summary = "; ".join(f"{key}: {err}" for key, err in sorted(errors.items()))
        super().__init__(f"{len(errors)} upgrade(s) could not be resumed: {summary}")
