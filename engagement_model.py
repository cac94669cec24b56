"""
engagement_model.py — weekly streak model for the recurring survey

Input columns (raw record frame, see survey_source.records_frame):
  ['session', 'timestamp', 'expired']

Pipeline:
  normalize_responses  -> one row per (session, calendar week)
  segment_session      -> run id / run rank per week
  streak_history       -> per-week inactivity state
  EngagementModel      -> one classification row per session
"""
from __future__ import annotations
import logging
import numpy as np, pandas as pd
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, asdict
from datetime import date
from typing import Dict, List, Optional, Tuple

log = logging.getLogger(__name__)

# Week boundary sits at Thursday 09:00 instead of Monday 00:00.
WEEK_SHIFT = pd.Timedelta(days=3, hours=9)


class WeekGapError(ValueError):
    """A session's individual week indices are not 1..n."""


@dataclass
class Run:
    value: bool
    start: int
    length: int


@dataclass
class EngagementConfig:
    streak_weeks: int = 2
    severe_streaks: int = 2
    workers: Optional[int] = None


@dataclass
class Classification:
    session: str
    duration: int
    calendar_gaps: int
    currently_inactive_weeks: int
    inactive_streak_count: int
    remind: bool
    severe: bool


CLASSIFICATION_COLUMNS = list(Classification.__dataclass_fields__)


# ----------------------------
# Observation normalizer
# ----------------------------

def _expiry_present(marker: pd.Series) -> pd.Series:
    if pd.api.types.is_bool_dtype(marker):
        return marker.fillna(False).astype(bool)
    # exports carry the expiry timestamp, or nothing if the instance never expired
    if pd.api.types.is_object_dtype(marker) or pd.api.types.is_string_dtype(marker):
        marker = marker.replace("", np.nan)
    return marker.notna()


def calendar_week_key(ts: pd.Series) -> pd.Series:
    """ISO-year * 100 + ISO-week of the shifted timestamp."""
    iso = (ts - WEEK_SHIFT).dt.isocalendar()
    return iso["year"].astype(int) * 100 + iso["week"].astype(int)


def normalize_responses(records: pd.DataFrame) -> pd.DataFrame:
    """
    Collapse raw survey responses into one observation per session and calendar week.
    A week is active if any response in it was not expired. Individual week
    indices restart at 1 for every session.
    """
    df = records[["session", "timestamp", "expired"]].copy()
    df = df.dropna(subset=["session", "timestamp"])
    if df.empty:
        return pd.DataFrame({"session": pd.Series(dtype=object), "calendar_week": pd.Series(dtype=int),
                             "week": pd.Series(dtype=int), "active": pd.Series(dtype=bool)})
    if not pd.api.types.is_datetime64_any_dtype(df["timestamp"]):
        df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
    df["session"] = df["session"].astype(str)
    df["calendar_week"] = calendar_week_key(df["timestamp"])
    df["active"] = ~_expiry_present(df["expired"])

    weekly = (df.groupby(["session", "calendar_week"], as_index=False)["active"].any()
                .sort_values(["session", "calendar_week"])
                .reset_index(drop=True))
    weekly["week"] = weekly.groupby("session").cumcount() + 1
    return weekly[["session", "calendar_week", "week", "active"]]


def _week_monday(key: int) -> date:
    return date.fromisocalendar(int(key) // 100, int(key) % 100, 1)


def calendar_gaps(calendar_weeks: pd.Series) -> int:
    """Number of ISO weeks inside the observed span that have no record at all."""
    keys = sorted(set(int(k) for k in calendar_weeks))
    if len(keys) < 2:
        return 0
    span = (_week_monday(keys[-1]) - _week_monday(keys[0])).days // 7 + 1
    return span - len(keys)


# ----------------------------
# Streak segmenter
# ----------------------------

def segment_runs(active: pd.Series) -> pd.DataFrame:
    """
    Label every week with the run it belongs to and its 1-based position in that run.
    The first week never counts as a change.
    """
    s = pd.Series(active).astype(bool).reset_index(drop=True)
    if s.empty:
        raise ValueError("cannot segment an empty sequence")
    changed = s.ne(s.shift(fill_value=s.iloc[0])).astype(int)
    run_id = changed.cumsum() + 1
    run_rank = run_id.groupby(run_id).cumcount() + 1
    return pd.DataFrame({"active": s, "run_id": run_id, "run_rank": run_rank})


def segment_session(weekly: pd.DataFrame) -> pd.DataFrame:
    g = weekly.sort_values("week").reset_index(drop=True)
    expected = list(range(1, len(g) + 1))
    if g["week"].astype(int).tolist() != expected:
        raise WeekGapError(f"week indices {g['week'].tolist()} are not contiguous from 1")
    out = segment_runs(g["active"])
    out.insert(0, "week", g["week"].astype(int))
    return out


def collapse_runs(elements: pd.DataFrame) -> List[Run]:
    runs = (elements.groupby("run_id", sort=True)
                    .agg(value=("active", "first"), start=("week", "min"), length=("week", "size")))
    return [Run(bool(r.value), int(r.start), int(r.length)) for r in runs.itertuples()]


# ----------------------------
# Inactivity classifier
# ----------------------------

def streak_history(elements: pd.DataFrame, cfg: Optional[EngagementConfig] = None) -> pd.DataFrame:
    """
    Evaluate the classification as of every week.
    An inactive run is counted once, in the week its rank reaches streak_weeks.
    """
    cfg = cfg or EngagementConfig()
    h = elements.copy()
    inactive = ~h["active"]
    h["currently_inactive_weeks"] = np.where(inactive, h["run_rank"], 0).astype(int)
    h["inactive_streak_count"] = (inactive & (h["run_rank"] == cfg.streak_weeks)).astype(int).cumsum()
    h["remind"] = h["currently_inactive_weeks"] == cfg.streak_weeks
    h["severe"] = h["inactive_streak_count"] >= cfg.severe_streaks
    return h


def classify_session(session: str, weekly: pd.DataFrame,
                     cfg: Optional[EngagementConfig] = None) -> Classification:
    h = streak_history(segment_session(weekly), cfg)
    last = h.iloc[-1]
    gaps = calendar_gaps(weekly["calendar_week"]) if "calendar_week" in weekly.columns else 0
    return Classification(
        session=str(session),
        duration=int(last["week"]),
        calendar_gaps=int(gaps),
        currently_inactive_weeks=int(last["currently_inactive_weeks"]),
        inactive_streak_count=int(last["inactive_streak_count"]),
        remind=bool(last["remind"]),
        severe=bool(last["severe"]),
    )


def _classify_group(item: Tuple[str, pd.DataFrame], cfg: EngagementConfig):
    session, g = item
    try:
        return classify_session(session, g, cfg), None
    except WeekGapError as e:
        return None, (str(session), str(e))


class EngagementModel:
    def __init__(self, streak_weeks: int = 2, severe_streaks: int = 2, workers: Optional[int] = None):
        self.cfg = EngagementConfig(streak_weeks, severe_streaks, workers)
        self.errors_: Dict[str, str] = {}

    def _groups(self, weekly: pd.DataFrame):
        return [(str(s), g) for s, g in weekly.groupby("session", sort=True)]

    def classify(self, weekly: pd.DataFrame) -> pd.DataFrame:
        """One classification row per session; sessions with week gaps are left out."""
        groups = self._groups(weekly)
        if self.cfg.workers and self.cfg.workers > 1 and len(groups) > 1:
            with ThreadPoolExecutor(max_workers=self.cfg.workers) as pool:
                results = list(pool.map(lambda item: _classify_group(item, self.cfg), groups))
        else:
            results = [_classify_group(item, self.cfg) for item in groups]

        self.errors_ = {}
        rows = []
        for row, err in results:
            if err is not None:
                self.errors_[err[0]] = err[1]
                log.warning("Session %s excluded: %s", err[0], err[1])
            else:
                rows.append(asdict(row))
        log.info("Classified %d sessions (%d excluded)", len(rows), len(self.errors_))
        return pd.DataFrame(rows, columns=CLASSIFICATION_COLUMNS)

    def history(self, weekly: pd.DataFrame) -> pd.DataFrame:
        parts = []
        for session, g in self._groups(weekly):
            try:
                h = streak_history(segment_session(g), self.cfg)
            except WeekGapError as e:
                log.warning("Session %s excluded: %s", session, e)
                continue
            h.insert(0, "session", session)
            parts.append(h)
        if not parts:
            return pd.DataFrame(columns=["session", "week", "active", "run_id", "run_rank",
                                         "currently_inactive_weeks", "inactive_streak_count", "remind", "severe"])
        return pd.concat(parts, ignore_index=True)
