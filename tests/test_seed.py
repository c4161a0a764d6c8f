from __future__ import annotations

import pytest

from teamup.seed import seed_fake_data
from teamup.storage import database_summary


def test_seed_fake_data_populates_tables():
    result = seed_fake_data(
        user_count=4, event_count=3, max_participants_per_event=2, max_messages_per_event=3
    )

    summary = database_summary()
    assert result["users"] == summary["users"] == 4
    assert result["events"] == summary["events"] == 3
    # Every event carries its organizer record on top of the joins.
    assert summary["participations"] == result["participations"] + 3
    assert summary["messages"] == result["messages"]


def test_seed_fake_data_validates_counts():
    with pytest.raises(ValueError):
        seed_fake_data(user_count=1)
