"""Phase and status enums for the devnet upgrade workflow."""

from enum import Enum


class PhaseEnum(str, Enum):
    """Upgrade workflow phases.

    State transitions (happy path):
    pending → proposed → voting → vote_passed → awaiting_height
        → [exporting_state] → switching_binary → restarting_nodes
        → verifying_health → completed

    Every non-terminal phase may also exit to failed or cancelled;
    proposed and voting may exit to vote_rejected.
    """

    PENDING = "pending"
    PROPOSED = "proposed"
    VOTING = "voting"
    VOTE_PASSED = "vote_passed"
    AWAITING_HEIGHT = "awaiting_height"
    EXPORTING_STATE = "exporting_state"
    SWITCHING_BINARY = "switching_binary"
    RESTARTING_NODES = "restarting_nodes"
    VERIFYING_HEALTH = "verifying_health"
    COMPLETED = "completed"
    VOTE_REJECTED = "vote_rejected"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES

    @property
    def rank(self) -> int:
        """Position on the happy path.

        vote_rejected ranks right after voting since it can only follow a
        tally; failed and cancelled have no position.
        """
        if self is PhaseEnum.VOTE_REJECTED:
            return HAPPY_PATH.index(PhaseEnum.VOTING) + 1
        if self in (PhaseEnum.FAILED, PhaseEnum.CANCELLED):
            return -1
        return HAPPY_PATH.index(self)


HAPPY_PATH = [
    PhaseEnum.PENDING,
    PhaseEnum.PROPOSED,
    PhaseEnum.VOTING,
    PhaseEnum.VOTE_PASSED,
    PhaseEnum.AWAITING_HEIGHT,
    PhaseEnum.EXPORTING_STATE,
    PhaseEnum.SWITCHING_BINARY,
    PhaseEnum.RESTARTING_NODES,
    PhaseEnum.VERIFYING_HEALTH,
    PhaseEnum.COMPLETED,
]

TERMINAL_PHASES = frozenset(
    {
        PhaseEnum.COMPLETED,
        PhaseEnum.VOTE_REJECTED,
        PhaseEnum.FAILED,
        PhaseEnum.CANCELLED,
    }
)


class Outcome(str, Enum):
    """Result of running one phase action, fed to the transitioner."""

    SUCCESS = "success"
    SKIP = "skip"
    REJECTED = "rejected"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ProposalStatus(str, Enum):
    """Governance proposal status as reported by the chain."""

    DEPOSIT_PERIOD = "PROPOSAL_STATUS_DEPOSIT_PERIOD"
    VOTING_PERIOD = "PROPOSAL_STATUS_VOTING_PERIOD"
    PASSED = "PROPOSAL_STATUS_PASSED"
    REJECTED = "PROPOSAL_STATUS_REJECTED"
    FAILED = "PROPOSAL_STATUS_FAILED"
    UNSPECIFIED = "PROPOSAL_STATUS_UNSPECIFIED"
