"""Decides which message range to elide when a history is over budget."""

import logging
import math
from enum import Enum
from typing import Optional, Sequence, Union

from agent_rewind.tools.context_management.models import Role, TruncationRange

logger = logging.getLogger(__name__)

# Overage ratio at or above which half of the history is elided instead of a quarter
HALF_TRUNCATION_RATIO = 2.0


class Severity(str, Enum):
    QUARTER = "quarter"
    HALF = "half"

    @property
    def fraction(self) -> float:
        return 0.5 if self is Severity.HALF else 0.25


class PlanOutcome(str, Enum):
    EXHAUSTED = "exhausted"


EXHAUSTED = PlanOutcome.EXHAUSTED


class TruncationPlanner:
    """Computes the next, strictly wider, truncation range."""

    def __init__(self, tail_keep: int = 10):
        self.tail_keep = tail_keep

    @staticmethod
    def severity_for(overage_ratio: float) -> Severity:
        return Severity.HALF if overage_ratio >= HALF_TRUNCATION_RATIO else Severity.QUARTER

    def plan(self, message_count: int, current_range: Optional[TruncationRange],
             overage_ratio: float,
             roles: Optional[Sequence[Role]] = None) -> Union[TruncationRange, PlanOutcome]:
        """
        Plan the next truncation range.

        Args:
            message_count: Number of messages in the raw history
            current_range: Range already elided for this task, if any
            overage_ratio: Estimated tokens divided by the safe budget
            roles: Role of each message, used to end the range on a full turn.
                Alternating user/assistant roles are assumed when omitted.

        Returns:
            The new range covering the old one, or EXHAUSTED
        """
        severity = self.severity_for(overage_ratio)
        new_start = current_range.end + 1 if current_range else 1
        extent = math.floor(message_count * severity.fraction)
        new_end = min(new_start + extent, message_count - self.tail_keep - 1)

        if new_start >= new_end:
            return EXHAUSTED

        while new_end >= new_start and not self._ends_turn(new_end, roles):
            new_end -= 1

        # a single-message range is fine as long as it ends a turn
        if new_end < new_start:
            return EXHAUSTED

        start = current_range.start if current_range else new_start
        logger.debug("Planned %s truncation [%d, %d] of %d messages",
                     severity.value, start, new_end, message_count)
        return TruncationRange(start, new_end)

    @staticmethod
    def _ends_turn(index: int, roles: Optional[Sequence[Role]]) -> bool:
        if roles is None:
            return index % 2 == 1
        return roles[index] == Role.ASSISTANT
