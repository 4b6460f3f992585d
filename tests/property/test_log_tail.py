"""Property-based tests for container log storage."""

from uuid import uuid4

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from crateflow.managers.log_manager import LogCategory

contents = st.lists(st.text(max_size=40), min_size=1, max_size=8)


@pytest.mark.property
@pytest.mark.asyncio
@given(lines=contents, limit=st.integers(min_value=1, max_value=10))
@settings(
    suppress_health_check=[HealthCheck.function_scoped_fixture],
    max_examples=25,
    deadline=None,
)
async def test_tail_returns_last_entries_verbatim(log_manager, lines, limit):
    """Property: tail(limit=n) returns exactly the last n appended contents."""
    container_id = uuid4().hex[:12]

    for line in lines:
        await log_manager.append(container_id, line, LogCategory.APPLICATION)

    entries = await log_manager.tail(container_id, LogCategory.APPLICATION, limit=limit)

    assert [entry.content for entry in entries] == lines[-limit:]


@pytest.mark.property
@pytest.mark.asyncio
@given(
    lines=st.lists(
        st.tuples(st.sampled_from(list(LogCategory)), st.text(max_size=20)),
        min_size=1,
        max_size=12,
    ),
    limit=st.integers(min_value=1, max_value=15),
)
@settings(
    suppress_health_check=[HealthCheck.function_scoped_fixture],
    max_examples=25,
    deadline=None,
)
async def test_recent_is_bounded_and_ordered(log_manager, lines, limit):
    """Property: recent() is chronological and never exceeds its limit."""
    container_id = uuid4().hex[:12]

    for category, line in lines:
        await log_manager.append(container_id, line, category)

    entries = await log_manager.recent(container_id, limit=limit)
    timestamps = [entry.timestamp for entry in entries]

    assert len(entries) == min(limit, len(lines))
    assert timestamps == sorted(timestamps)
