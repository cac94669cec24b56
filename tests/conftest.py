"""
Shared fixtures: raw survey records built from per-session activity patterns.
"""

import pandas as pd
import pytest

from survey_settings import Settings

# Friday noon; shifted back 3d9h it is still inside ISO week 2024-W01.
BASE = pd.Timestamp("2024-01-05 12:00", tz="UTC")


def make_records(patterns, start_offsets=None, base=BASE):
    """
    patterns: {session: [True, False, ...]} one weekly response per entry.
    start_offsets: {session: n} shifts a session's first week by n weeks.
    """
    start_offsets = start_offsets or {}
    rows = []
    for session, seq in patterns.items():
        first = base + pd.Timedelta(weeks=start_offsets.get(session, 0))
        for i, active in enumerate(seq):
            ts = first + pd.Timedelta(weeks=i)
            rows.append({
                "session": session,
                "timestamp": ts,
                "expired": None if active else ts + pd.Timedelta(days=2),
            })
    return pd.DataFrame(rows, columns=["session", "timestamp", "expired"])


def weekly_frame(seq, session="s1"):
    return pd.DataFrame({
        "session": [session] * len(seq),
        "week": list(range(1, len(seq) + 1)),
        "active": list(seq),
    })


@pytest.fixture
def settings():
    return Settings(
        email_backend="console",
        sender_address="Study Team <study@example.org>",
        send_interval_seconds=5,
        survey_client_id="cid",
        survey_client_secret="secret",
        survey_run_name="weekly-study",
    )


@pytest.fixture
def contacts():
    return pd.DataFrame({
        "session": ["a", "b", "c"],
        "email": ["a@example.org", "b@example.org", "c@example.org"],
    })
