#!/usr/bin/env python3
"""
Cognos Report Runner

Runs a saved report to CSV and waits for it to finish.

State Machine:
    SUBMITTED → WORKING ⟲ → READY        (download the CSV)
                        ↘ PROMPTING     (fatal: parameterized report)
                        ↘ UNRECOGNIZED  (fatal: page not understood)

Cognos signals "still working" in two encodings depending on the code path
that rendered the page: a plain JSON-style flag and an HTML-entity-escaped
one. Both are treated as authoritative.

Every poll is built from the fields of the response immediately before it.
"""

from __future__ import annotations

import html
import sys
import threading
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Dict, Optional
from urllib.parse import urlencode

from cognos_errors import PollLimitError, ProtocolParseError, UnsupportedReportError
from cognos_links import CGI_PATH, find_download_url, find_json_value_in_page, report_link_from_id


WORKING_MARKERS = (
    '"m_sStatus": "working"',
    "&quot;m_sStatus&quot;: &quot;stillWorking&quot;",
)
PROMPTING_MARKERS = (
    '"m_sStatus": "prompting"',
    "&quot;m_sStatus&quot;: &quot;prompting&quot;",
)

# Form key sent with each poll → key of the value in the previous response
POLL_FIELDS = {
    "b_action": "b_action",
    "cv.actionState": "m_sActionState",
    "cv.id": "cv.id",
    "cv.objectPermissions": "cv.objectPermissions",
    "executionParameters": "m_sParameters",
    "m_tracking": "m_sTracking",
    "ui.cafcontextid": "m_sCAFContext",
    "ui.conversation": "m_sConversation",
    "ui.object": "ui.object",
    "ui.objectClass": "ui.objectClass",
    "ui.primaryAction": "ui.primaryAction",
}

POLL_CONSTANTS = {
    "cv.catchLogOnFault": "true",
    "cv.responseFormat": "data",
    "cv.showFaultPage": "true",
    "ui.action": "wait",
}


class RunStatus(Enum):
    SUBMITTED = auto()
    WORKING = auto()
    PROMPTING = auto()
    READY = auto()
    UNRECOGNIZED = auto()


def classify_page(body: str) -> RunStatus:
    """Decide what a report response says, checking markers in priority order."""
    if any(marker in body for marker in WORKING_MARKERS):
        return RunStatus.WORKING
    if any(marker in body for marker in PROMPTING_MARKERS):
        return RunStatus.PROMPTING
    if find_download_url(body) is not None:
        return RunStatus.READY
    return RunStatus.UNRECOGNIZED


def extract_poll_fields(body: str) -> Dict[str, str]:
    """
    Read every field needed for the next poll from one response.

    Entity-escaped pages are scanned again after unescaping.

    Raises:
        ProtocolParseError: Any field is missing
    """
    unescaped = None
    fields: Dict[str, str] = {}
    for form_key, page_key in POLL_FIELDS.items():
        try:
            fields[form_key] = find_json_value_in_page(body, page_key)
        except ProtocolParseError:
            if unescaped is None:
                unescaped = html.unescape(body)
            fields[form_key] = find_json_value_in_page(unescaped, page_key)
    return fields


def build_poll_body(fields: Dict[str, str]) -> str:
    """Form-encode poll fields plus the fixed wait parameters, keys sorted."""
    values = dict(fields)
    values.update(POLL_CONSTANTS)
    return urlencode(sorted(values.items()))


@dataclass
class ReportRunState:
    """In-memory state of one report run."""
    report_id: str
    body: str = ""
    status: RunStatus = RunStatus.SUBMITTED
    polls: int = 0
    fields: Dict[str, str] = field(default_factory=dict)

    def update(self, body: str) -> RunStatus:
        """Replace the current response and drop everything derived from the old one."""
        self.body = body
        self.fields = {}
        self.status = classify_page(body)
        return self.status


def download_report_csv(
    session,
    report_id: str,
    max_polls: Optional[int] = None,
    cancel: Optional[threading.Event] = None,
) -> bytes:
    """
    Run a report and return its CSV output as the raw bytes Cognos produced.

    This triggers execution of the report and may take a while to return.
    Polling happens every retry_delay_sec seconds.

    Args:
        session: CognosSession to send requests through
        report_id: Cognos search path / id of the report
        max_polls: Give up after this many polls (default: session config,
            where None means poll until the report finishes)
        cancel: Event that aborts the wait between polls

    Raises:
        UnsupportedReportError: The report prompted for parameters
        ProtocolParseError: A response could not be understood
        PollLimitError: Still working after max_polls polls
        TransportError: A request failed
    """
    if max_polls is None:
        max_polls = session.cfg.max_polls

    state = ReportRunState(report_id=report_id)
    state.update(session.request("GET", report_link_from_id(report_id), cancel=cancel))

    while state.status is RunStatus.WORKING:
        if max_polls is not None and state.polls >= max_polls:
            raise PollLimitError(f"Report {report_id} still running after {state.polls} polls")

        state.fields = extract_poll_fields(state.body)
        post_data = build_poll_body(state.fields)

        session.pause(session.cfg.retry_delay_sec, cancel)
        state.polls += 1
        print(f"[Poll] Report {report_id} still running; poll {state.polls}", file=sys.stderr)
        state.update(session.request("POST", CGI_PATH, post_data, cancel=cancel))

    if state.status is RunStatus.PROMPTING:
        raise UnsupportedReportError(
            f"Report {report_id} prompted for additional information; "
            "save default parameters on the report or remove its prompts"
        )

    if state.status is RunStatus.UNRECOGNIZED:
        raise ProtocolParseError(
            f"Cognos returned a page we could not understand when running report {report_id}"
        )

    download_url = find_download_url(state.body)
    print(f"[Report] Report {report_id} finished after {state.polls} polls; downloading", file=sys.stderr)
    return session.request_bytes("GET", download_url, cancel=cancel)
