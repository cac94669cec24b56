"""
outreach.py — Status table and reminder queue for the weekly survey

Works with:
  weekly      : ['session', 'calendar_week', 'week', 'active']   (engagement_model.normalize_responses)
  classified  : engagement_model.EngagementModel.classify output
  contacts    : ['session', 'email']                               (survey_source.extract_contacts)

Outputs:
  - status table : one row per participant with a contact address
  - remind queue : participants whose current inactive streak just reached two weeks
"""
from __future__ import annotations

import logging
from typing import Optional, Tuple
import pandas as pd

from engagement_model import EngagementModel, normalize_responses

log = logging.getLogger(__name__)

STATUS_COLUMNS = ["session", "email", "duration", "calendar_gaps", "currently_inactive_weeks",
                  "inactive_streak_count", "severe", "remind"]
QUEUE_COLUMNS = ["session", "email", "severe"]


def _clean_contacts(contacts: pd.DataFrame) -> pd.DataFrame:
    c = contacts[["session", "email"]].copy()
    c["email"] = c["email"].astype("string").str.strip()
    c = c[c["email"].notna() & (c["email"] != "")]
    c["session"] = c["session"].astype(str)
    # a participant is created by their first enrollment record; later re-submissions are ignored
    return c.drop_duplicates("session", keep="first")


def activity_matrix(weekly: pd.DataFrame) -> pd.DataFrame:
    """
    Dense week_1..week_N activity per session. Weeks past a participant's last
    observation stay <NA>, never False.
    """
    if weekly.empty:
        return pd.DataFrame(columns=["session"])
    m = weekly.pivot(index="session", columns="week", values="active")
    m = m.reindex(columns=range(1, int(weekly["week"].max()) + 1)).astype("boolean")
    m.columns = [f"week_{w}" for w in m.columns]
    return m.reset_index()


# ----------------------------
# Core builders
# ----------------------------

def build_status_table(classified: pd.DataFrame,
                       contacts: pd.DataFrame,
                       weekly: pd.DataFrame) -> pd.DataFrame:
    """
    Inner-join contact address, classification and activity vector per session.
    A session missing from any of the three inputs is left out.
    """
    c = _clean_contacts(contacts)
    status = c.merge(classified, on="session", how="inner")
    status = status.merge(activity_matrix(weekly), on="session", how="inner")
    week_cols = [col for col in status.columns if col.startswith("week_")]
    status = status[STATUS_COLUMNS + week_cols].sort_values("session").reset_index(drop=True)
    log.info("Status table: %d participants (%d with contact, %d classified)",
             len(status), len(c), len(classified))
    return status


def build_remind_queue(status: pd.DataFrame) -> pd.DataFrame:
    """Participants to message this run, severe cases first."""
    q = status[status["remind"].astype(bool)].copy()
    q = q.sort_values(["severe", "session"], ascending=[False, True])
    return q[QUEUE_COLUMNS].reset_index(drop=True)


def build_outreach(records: pd.DataFrame,
                   contacts: pd.DataFrame,
                   model: Optional[EngagementModel] = None) -> Tuple[pd.DataFrame, pd.DataFrame, EngagementModel]:
    """
    Convenience wrapper: normalize, classify, and build both tables.
    Returns (status_table, remind_queue, model).
    """
    if model is None:
        model = EngagementModel()
    weekly = normalize_responses(records)
    classified = model.classify(weekly)
    status = build_status_table(classified, contacts, weekly)
    queue = build_remind_queue(status)
    return status, queue, model
