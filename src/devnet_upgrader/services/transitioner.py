"""Fixed phase transition table for the upgrade workflow."""

import logging
from collections import deque
from typing import Optional

from devnet_upgrader.errors import InvalidTransition
from devnet_upgrader.models.record import PhaseTransition, UpgradeRecord, utcnow
from devnet_upgrader.models.status import HAPPY_PATH, Outcome, PhaseEnum


def _build_table() -> dict[tuple[PhaseEnum, Outcome], PhaseEnum]:
    table: dict[tuple[PhaseEnum, Outcome], PhaseEnum] = {}
    for current, following in zip(HAPPY_PATH, HAPPY_PATH[1:]):
        table[(current, Outcome.SUCCESS)] = following
    for phase in HAPPY_PATH:
        if phase.is_terminal:
            continue
        table[(phase, Outcome.FAILED)] = PhaseEnum.FAILED
        table[(phase, Outcome.CANCELLED)] = PhaseEnum.CANCELLED
    table[(PhaseEnum.PROPOSED, Outcome.REJECTED)] = PhaseEnum.VOTE_REJECTED
    table[(PhaseEnum.VOTING, Outcome.REJECTED)] = PhaseEnum.VOTE_REJECTED
    # Pre-upgrade export disabled
    table[(PhaseEnum.AWAITING_HEIGHT, Outcome.SKIP)] = PhaseEnum.SWITCHING_BINARY
    return table


TRANSITIONS = _build_table()


class StateTransitioner:
    """Pure lookup over the transition table.

    Anything not listed is rejected with `InvalidTransition`, including
    every transition out of a terminal phase.
    """

    def __init__(self, table: Optional[dict[tuple[PhaseEnum, Outcome], PhaseEnum]] = None):
        self._table = table if table is not None else TRANSITIONS
        self.logger = logging.getLogger("devnet_upgrader.transitioner")

    def next(self, phase: PhaseEnum, outcome: Outcome) -> PhaseEnum:
        try:
            return self._table[(phase, outcome)]
        except KeyError:
            raise InvalidTransition(phase.value, outcome=getattr(outcome, "value", str(outcome))) from None

    def can_transition(self, phase: PhaseEnum, outcome: Outcome) -> bool:
        return (phase, outcome) in self._table

    def advance(self, record: UpgradeRecord, outcome: Outcome, reason: str = "") -> PhaseEnum:
        """Apply one accepted transition to the in-memory record.

        Args:
            record: Record to mutate (caller checkpoints it afterwards)
            outcome: Outcome of the action run in the current phase
            reason: Free-form note kept in the record history

        Returns:
            The new phase

        Raises:
            InvalidTransition: If (record.phase, outcome) is not in the table
        """
        previous = record.phase
        following = self.next(previous, outcome)
        now = utcnow()
        record.phase = following
        record.updated_at = now
        record.history.append(
            PhaseTransition(
                from_phase=previous,
                to_phase=following,
                outcome=outcome,
                reason=reason,
                at=now,
            )
        )
        if outcome in (Outcome.SUCCESS, Outcome.SKIP):
            record.clear_error()
        if following.is_terminal:
            record.completed_at = now
        self.logger.debug(f"{record.namespace}/{record.devnet}: {previous.value} -> {following.value} ({outcome.value})")
        return following

    def path(self, source: PhaseEnum, target: PhaseEnum) -> list[tuple[Outcome, PhaseEnum]]:
        """Shortest chain of legal transitions from source to target.

        Used to fast-forward a record whose checkpoints were lost. Only
        forward outcomes are followed; failed/cancelled are never part of
        a reconciliation path.

        Raises:
            InvalidTransition: If target is unreachable from source
        """
        if source == target:
            return []
        forward = (Outcome.SUCCESS, Outcome.SKIP, Outcome.REJECTED)
        queue = deque([(source, [])])
        seen = {source}
        while queue:
            phase, steps = queue.popleft()
            for outcome in forward:
                following = self._table.get((phase, outcome))
                if following is None or following in seen:
                    continue
                route = steps + [(outcome, following)]
                if following == target:
                    return route
                seen.add(following)
                queue.append((following, route))
        raise InvalidTransition(source.value, to_phase=target.value)
