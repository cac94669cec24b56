# notifier.py
"""
Reminder emails for participants whose inactivity streak just hit two weeks.

One send per participant per run, strictly one at a time, with at least
`send_interval_seconds` between sends. Failed sends are recorded on the
outcome and logged; they are never retried and never stop the batch.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from email.utils import parseaddr
from typing import Callable, Dict, List, Optional

import pandas as pd
import requests

from survey_settings import Settings

log = logging.getLogger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


@dataclass(frozen=True)
class MessageTemplate:
    tag: str
    subject: str
    body: str


TEMPLATES: Dict[str, MessageTemplate] = {
    "mild": MessageTemplate(
        tag="mild",
        subject="We missed you in the weekly survey",
        body=(
            "Hi,\n\nwe noticed you skipped the last two weekly surveys. "
            "Every week counts for the study, so we'd be glad to hear from you again "
            "next time.{link}\n\nThank you for taking part!"
        ),
    ),
    "severe": MessageTemplate(
        tag="severe",
        subject="Your weekly survey: please stay with us",
        body=(
            "Hi,\n\nthis is the second time you have missed two weekly surveys in a row. "
            "Gaps like this make your earlier answers much harder to use, so your next "
            "response really matters to us.{link}\n\n"
            "If something keeps you from taking part, just reply to this email.\n\nThank you!"
        ),
    ),
}


def select_template(severe: bool) -> MessageTemplate:
    if severe:
        return TEMPLATES["severe"]
    return TEMPLATES["mild"]


@dataclass
class DispatchOutcome:
    email: str
    severe: bool
    template: str
    ok: bool
    error: Optional[str] = None
    sent_at: Optional[str] = None
    session: Optional[str] = None


def _split_name_email(s: str):
    name, email = parseaddr(s or "")
    return (name or None), (email or "no-reply@example.com")


# ─── Backends ──────────────────────────────────────────────────────────────────

class SendGridBackend:
    def __init__(self, settings: Settings, http: Optional[requests.Session] = None):
        if not settings.sendgrid_api_key:
            raise RuntimeError("SENDGRID_API_KEY is not set (required for SendGrid backend)")
        self.settings = settings
        self.http = http or requests.Session()

    def send(self, to: str, subject: str, body: str) -> None:
        name, email = _split_name_email(self.settings.sender_address)
        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": email, "name": name},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body or ""}],
        }
        if self.settings.reply_to:
            rn, re_ = _split_name_email(self.settings.reply_to)
            payload["reply_to"] = {"email": re_, "name": rn}

        r = self.http.post(
            SENDGRID_URL,
            headers={"Authorization": f"Bearer {self.settings.sendgrid_api_key}",
                     "Content-Type": "application/json"},
            json=payload,
            timeout=self.settings.email_timeout_seconds,
        )
        if r.status_code >= 300:
            raise RuntimeError(f"SendGrid error {r.status_code}: {r.text}")


class ConsoleBackend:
    def __init__(self, settings: Settings):
        self.settings = settings

    def send(self, to: str, subject: str, body: str) -> None:
        log.info("EMAIL (console) From: %s To: %s Subject: %s\n%s",
                 self.settings.sender_address, to, subject, body)


def make_backend(settings: Settings):
    if settings.email_backend == "console":
        return ConsoleBackend(settings)
    if settings.email_backend == "sendgrid":
        return SendGridBackend(settings)
    raise ValueError(f"Unknown email_backend={settings.email_backend} (use 'sendgrid' or 'console')")


# ─── Dispatcher ────────────────────────────────────────────────────────────────

class Dispatcher:
    def __init__(self, settings: Settings, backend=None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.settings = settings
        self.backend = backend if backend is not None else make_backend(settings)
        self.interval = float(settings.send_interval_seconds)
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._last_send: Optional[float] = None

    def render(self, severe: bool):
        tpl = select_template(severe)
        link = f"\n\n{self.settings.survey_url}" if self.settings.survey_url else ""
        return tpl, tpl.body.format(link=link)

    def _wait_turn(self) -> None:
        if self._last_send is None:
            return
        wait = self.interval - (self._clock() - self._last_send)
        if wait > 0:
            self._sleep(wait)

    def dispatch(self, address: str, severe: bool, session: Optional[str] = None) -> DispatchOutcome:
        """Send one reminder. Failures come back on the outcome instead of raising."""
        tpl, body = self.render(severe)
        with self._lock:
            self._wait_turn()
            try:
                self.backend.send(address, tpl.subject, body)
                outcome = DispatchOutcome(address, bool(severe), tpl.tag, True,
                                          sent_at=datetime.now(timezone.utc).isoformat(), session=session)
                log.info("Reminder sent to %s (%s)", address, tpl.tag)
            except (requests.RequestException, RuntimeError) as e:
                outcome = DispatchOutcome(address, bool(severe), tpl.tag, False, error=str(e), session=session)
                log.warning("Reminder to %s failed: %s", address, e)
            finally:
                self._last_send = self._clock()
        return outcome

    def dispatch_all(self, queue: pd.DataFrame) -> List[DispatchOutcome]:
        outcomes: List[DispatchOutcome] = []
        seen = set()
        for row in queue.itertuples(index=False):
            session = getattr(row, "session", None)
            # one send per participant; a shared address still gets one message per participant
            key = session if session is not None else row.email
            if key in seen:
                log.info("Skipping repeated queue entry for %s", key)
                continue
            seen.add(key)
            outcomes.append(self.dispatch(row.email, bool(row.severe), session=session))
        failed = sum(1 for o in outcomes if not o.ok)
        log.info("Dispatch finished: %d sent, %d failed", len(outcomes) - failed, failed)
        return outcomes


def outcomes_frame(outcomes: List[DispatchOutcome]) -> pd.DataFrame:
    cols = list(DispatchOutcome.__dataclass_fields__)
    return pd.DataFrame([asdict(o) for o in outcomes], columns=cols)
