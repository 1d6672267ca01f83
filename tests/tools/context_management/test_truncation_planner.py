"""
Tests for the TruncationPlanner.
"""

import pytest

from agent_rewind.tools.context_management.context_store import ContextStore
from agent_rewind.tools.context_management.models import Role, TruncationRange
from agent_rewind.tools.context_management.truncation_planner import (
    EXHAUSTED,
    Severity,
    TruncationPlanner,
)


def test_quarter_truncation_of_forty_messages():
    planner = TruncationPlanner(tail_keep=10)
    assert planner.plan(40, None, 1.3) == TruncationRange(1, 11)


def test_half_truncation_when_far_over_budget():
    planner = TruncationPlanner(tail_keep=10)
    assert planner.severity_for(2.5) is Severity.HALF
    assert planner.plan(40, None, 2.5) == TruncationRange(1, 21)


def test_next_range_covers_previous_one():
    planner = TruncationPlanner(tail_keep=10)
    first = planner.plan(40, None, 1.3)
    second = planner.plan(40, first, 1.3)

    assert second.start == first.start
    assert second.end > first.end
    assert second.covers(first)


def test_range_never_reaches_the_tail():
    planner = TruncationPlanner(tail_keep=10)
    planned = planner.plan(30, TruncationRange(1, 15), 3.0)
    assert planned.end <= 30 - 10 - 1


def test_range_ends_on_an_assistant_message():
    planner = TruncationPlanner(tail_keep=2)
    roles = [Role.USER, Role.USER, Role.ASSISTANT, Role.USER, Role.USER,
             Role.ASSISTANT, Role.USER, Role.ASSISTANT, Role.USER, Role.ASSISTANT,
             Role.USER, Role.ASSISTANT]
    # a quarter of 12 messages would end at index 4, a user message
    planned = planner.plan(len(roles), None, 1.5, roles=roles)

    assert planned == TruncationRange(1, 2)
    assert roles[planned.end] is Role.ASSISTANT


def test_exhausted_when_only_tail_remains():
    planner = TruncationPlanner(tail_keep=10)
    assert planner.plan(12, None, 1.5) is EXHAUSTED


def test_exhausted_when_range_already_maximal():
    planner = TruncationPlanner(tail_keep=10)
    assert planner.plan(40, TruncationRange(1, 29), 1.5) is EXHAUSTED


def test_single_message_range_ending_a_turn():
    planner = TruncationPlanner(tail_keep=2)
    roles = [Role.USER, Role.ASSISTANT, Role.USER, Role.USER, Role.ASSISTANT, Role.USER]
    assert planner.plan(len(roles), None, 1.5, roles=roles) == TruncationRange(1, 1)


def test_exhausted_when_no_assistant_message_in_reach():
    planner = TruncationPlanner(tail_keep=2)
    roles = [Role.USER, Role.USER, Role.USER, Role.USER, Role.ASSISTANT, Role.USER]
    assert planner.plan(len(roles), None, 1.5, roles=roles) is EXHAUSTED


@pytest.mark.parametrize("message_count", [1, 2, 5, 12, 13, 40, 101])
@pytest.mark.parametrize("tail_keep", [0, 2, 10])
@pytest.mark.parametrize("ratio", [1.1, 1.99, 2.0, 5.0])
def test_repeated_planning_grows_and_protects_first_and_tail(message_count, tail_keep, ratio):
    planner = TruncationPlanner(tail_keep=tail_keep)
    store = ContextStore(tail_keep=tail_keep)
    tail = set(range(max(0, message_count - tail_keep), message_count))
    current = None

    for _ in range(message_count + 1):
        planned = planner.plan(message_count, current, ratio)
        if planned is EXHAUSTED:
            break
        assert planned.covers(current)
        if current is not None:
            assert planned.end > current.end
        assert planned.start == 1
        assert planned.end <= message_count - tail_keep - 1
        assert planned.end % 2 == 1

        kept = set(store.kept_indices(message_count, planned))
        assert 0 in kept
        assert tail <= kept
        assert kept.isdisjoint(range(planned.start, planned.end + 1))
        current = planned
    else:
        pytest.fail("planner never reported exhaustion")
