# survey_source.py  (survey platform results + CSV exports)
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import numpy as np
import pandas as pd
import requests

from survey_settings import Settings

log = logging.getLogger(__name__)


class SurveySourceError(RuntimeError):
    pass


class SurveyClient:
    """Results API of the survey platform (OAuth client-credentials)."""

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.base_url = settings.survey_api_base_url.rstrip("/")
        self.http = session or requests.Session()
        self.http.headers.update({"Accept": "application/json"})
        self._token: Optional[str] = None

    def _access_token(self) -> str:
        if self._token:
            return self._token
        if not (self.settings.survey_client_id and self.settings.survey_client_secret):
            raise SurveySourceError("survey_client_id / survey_client_secret are not set")
        try:
            r = self.http.post(
                f"{self.base_url}/oauth/access_token",
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.settings.survey_client_id,
                    "client_secret": self.settings.survey_client_secret,
                },
                timeout=self.settings.survey_timeout_seconds,
            )
            r.raise_for_status()
            token = (r.json() or {}).get("access_token")
        except (requests.RequestException, ValueError) as e:
            raise SurveySourceError(f"authentication failed: {e}") from e
        if not token:
            raise SurveySourceError("authentication response carried no access_token")
        self._token = token
        return token

    def fetch_results(self, survey_name: str) -> List[Dict[str, Any]]:
        params = {"access_token": self._access_token(), f"surveys[{survey_name}]": ""}
        if self.settings.survey_run_name:
            params["run[name]"] = self.settings.survey_run_name
        try:
            r = self.http.get(f"{self.base_url}/get/results", params=params,
                              timeout=self.settings.survey_timeout_seconds)
            r.raise_for_status()
            data = r.json()
        except (requests.RequestException, ValueError) as e:
            raise SurveySourceError(f"fetching results for {survey_name!r} failed: {e}") from e

        rows = data.get(survey_name, []) if isinstance(data, dict) else data
        if not isinstance(rows, list):
            raise SurveySourceError(f"unexpected results payload for {survey_name!r}")
        log.info("Fetched %d rows from survey %s", len(rows), survey_name)
        return rows


def load_results_csv(path: Union[str, Path]) -> List[Dict[str, Any]]:
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    log.info("Loaded %d rows from %s", len(df), path)
    return df.to_dict(orient="records")


def _blank_to_na(s: pd.Series) -> pd.Series:
    return s.where(s.astype(str).str.strip() != "")


def _require(df: pd.DataFrame, cols: Iterable[str]) -> None:
    missing = [c for c in cols if c not in df.columns]
    if missing:
        raise SurveySourceError(f"results are missing field(s): {', '.join(missing)}")


def records_frame(rows: List[Dict[str, Any]], settings: Settings) -> pd.DataFrame:
    """
    Map exported result rows to ['session', 'timestamp', 'expired'].
    Naive timestamps are read as wall-clock time in settings.survey_timezone.
    """
    s = settings
    if not rows:
        return pd.DataFrame({"session": pd.Series(dtype=object),
                             "timestamp": pd.Series(dtype=f"datetime64[ns, {s.survey_timezone}]"),
                             "expired": pd.Series(dtype=object)})
    df = pd.DataFrame(rows)
    _require(df, [s.session_field, s.timestamp_field])
    if s.expired_field not in df.columns:
        df[s.expired_field] = None

    out = pd.DataFrame({
        "session": _blank_to_na(df[s.session_field]),
        "timestamp": pd.to_datetime(_blank_to_na(df[s.timestamp_field]), errors="coerce"),
        "expired": _blank_to_na(df[s.expired_field]),
    })
    ts = out["timestamp"]
    if ts.dt.tz is None:
        # the repeated hour at the end of DST is read as its first (summer time) occurrence
        first_pass = np.ones(len(ts), dtype=bool)
        out["timestamp"] = ts.dt.tz_localize(s.survey_timezone, ambiguous=first_pass, nonexistent="shift_forward")
    else:
        out["timestamp"] = ts.dt.tz_convert(s.survey_timezone)
    dropped = int((out["session"].isna() | out["timestamp"].isna()).sum())
    if dropped:
        log.info("%d result rows without session or timestamp will be ignored", dropped)
    return out


def extract_contacts(rows: List[Dict[str, Any]], settings: Settings) -> pd.DataFrame:
    """session -> email from the enrollment survey; rows without an address are dropped."""
    s = settings
    if not rows:
        return pd.DataFrame(columns=["session", "email"])
    df = pd.DataFrame(rows)
    _require(df, [s.session_field, s.email_field_name])
    c = pd.DataFrame({"session": _blank_to_na(df[s.session_field]), "email": df[s.email_field_name]})
    c["email"] = c["email"].astype("string").str.strip()
    c = c[c["session"].notna() & c["email"].notna() & (c["email"] != "")]
    return c.reset_index(drop=True)
