#!/usr/bin/env python3
"""
Cognos Client Transport

Bounded-concurrency, retrying HTTP transport for driving a Cognos portal
through its web interface.

Key behaviours:
- Admission gate: at most N requests in flight per session, no matter how
  many folder listings or report runs are active at once
- Retries: transport errors and HTTP 401 are retried after a fixed delay;
  Cognos emits spurious 401s during normal operation
- Any other non-200 status is fatal for the call
- Auth: Basic credentials on every request, NTLM negotiated on challenge
- Cookies: one jar shared by every thread's requests.Session
"""

from __future__ import annotations

import codecs
import sys
import threading
import time
from http import HTTPStatus
from http.cookiejar import DefaultCookiePolicy
from typing import Callable, Optional

import requests
from publicsuffixlist import PublicSuffixList
from requests.adapters import HTTPAdapter
from requests.auth import HTTPBasicAuth
from requests.cookies import RequestsCookieJar
from requests_ntlm import HttpNtlmAuth
from urllib3.util.retry import Retry

from cognos_config import Config
from cognos_errors import GateTimeoutError, OperationCancelled, TransportError


USER_AGENT = "cognos-client/1.0"

# How often a blocked acquire re-checks its cancel event
_CANCEL_CHECK_SEC = 0.1


def _monotonic() -> float:
    return time.monotonic()


def pause(seconds: float, cancel: Optional[threading.Event] = None) -> None:
    """
    Block for `seconds`, returning early with OperationCancelled if the
    cancel event is set.
    """
    if seconds <= 0:
        if cancel is not None and cancel.is_set():
            raise OperationCancelled("Cancelled")
        return
    if cancel is None:
        time.sleep(seconds)
        return
    if cancel.wait(timeout=seconds):
        raise OperationCancelled("Cancelled while waiting")


def decode_body(resp: requests.Response) -> str:
    """
    Decode a response body as text.

    A declared charset wins. Without one, requests would fall back to
    ISO-8859-1 for text/* responses; Cognos sends UTF-8, so decode as UTF-8
    instead, honouring a UTF-8 or UTF-16 byte order mark.
    """
    if "charset" in resp.headers.get("Content-Type", "").lower():
        return resp.text
    content = resp.content
    if content.startswith((codecs.BOM_UTF16_LE, codecs.BOM_UTF16_BE)):
        return content.decode("utf-16")
    return content.decode("utf-8-sig", errors="replace")


def raw_body(resp: requests.Response) -> bytes:
    return resp.content


# =============================================================================
# ADMISSION GATE
# =============================================================================

class AdmissionGate:
    """Thread-safe fixed-size semaphore limiting in-flight requests."""

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError("Admission gate limit must be at least 1")
        self._limit = limit
        self._inflight = 0
        self._cond = threading.Condition()

    def acquire(self, timeout: Optional[float] = None,
                cancel: Optional[threading.Event] = None) -> None:
        """
        Acquire a slot, blocking while all slots are taken.

        Args:
            timeout: Seconds to wait before raising GateTimeoutError (None waits forever)
            cancel: Event that aborts the wait with OperationCancelled when set

        Raises:
            GateTimeoutError: No slot freed up within `timeout`
            OperationCancelled: `cancel` was set while waiting
        """
        with self._cond:
            deadline = None if timeout is None else _monotonic() + timeout
            while self._inflight >= self._limit:
                if cancel is not None and cancel.is_set():
                    raise OperationCancelled("Cancelled while waiting for a request slot")
                wait_for = None
                if deadline is not None:
                    wait_for = deadline - _monotonic()
                    if wait_for <= 0:
                        raise GateTimeoutError(
                            f"No request slot free after {timeout}s ({self._limit} in flight)"
                        )
                if cancel is not None:
                    wait_for = _CANCEL_CHECK_SEC if wait_for is None else min(wait_for, _CANCEL_CHECK_SEC)
                self._cond.wait(timeout=wait_for)
            if cancel is not None and cancel.is_set():
                raise OperationCancelled("Cancelled before acquiring a request slot")
            self._inflight += 1

    def release(self) -> None:
        """Release a slot."""
        with self._cond:
            if self._inflight == 0:
                raise RuntimeError("AdmissionGate released more times than acquired")
            self._inflight -= 1
            self._cond.notify(1)

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def inflight(self) -> int:
        with self._cond:
            return self._inflight


# =============================================================================
# COOKIES AND AUTH
# =============================================================================

_PSL = PublicSuffixList()


class PublicSuffixCookiePolicy(DefaultCookiePolicy):
    """Refuse cookies whose Domain attribute is a public suffix (.gov, .co.uk)."""

    def set_ok_domain(self, cookie, request):
        if cookie.domain_specified:
            domain = cookie.domain.lstrip(".")
            if domain and _PSL.is_public(domain):
                return False
        return super().set_ok_domain(cookie, request)


class SharedCookieJar(RequestsCookieJar):
    """
    Cookie jar shared by every thread of a session.

    CookieJar locks its own mutations; iteration is snapshotted under the
    same lock so one thread merging cookies into a request never sees the
    dict change underneath it.
    """

    def __init__(self):
        super().__init__(policy=PublicSuffixCookiePolicy())

    def __iter__(self):
        with self._cookies_lock:
            cookies = list(super().__iter__())
        return iter(cookies)


class BasicNtlmAuth(HttpNtlmAuth):
    """Send Basic credentials up front and answer NTLM challenges."""

    def __init__(self, username: str, password: str):
        super().__init__(username, password)
        self._basic = HTTPBasicAuth(username, password)

    def __call__(self, r):
        r = self._basic(r)
        return super().__call__(r)


def build_http_session(cfg: Config, cookies: RequestsCookieJar) -> requests.Session:
    """Create a requests.Session for one thread, wired to the shared jar."""
    session = requests.Session()
    adapter = HTTPAdapter(
        pool_connections=cfg.concurrent_requests,
        pool_maxsize=cfg.concurrent_requests,
        max_retries=Retry(total=0, read=False),  # We handle retries ourselves
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({"User-Agent": USER_AGENT})
    session.auth = BasicNtlmAuth(cfg.user, cfg.password)
    session.cookies = cookies
    return session


# =============================================================================
# SESSION
# =============================================================================

SessionFactory = Callable[[Config, RequestsCookieJar], requests.Session]


class CognosSession:
    """
    One authenticated Cognos session.

    Owns the admission gate and the cookie jar; hand the same instance to
    every folder/report operation so they share both.
    """

    def __init__(
        self,
        cfg: Config,
        session_factory: SessionFactory = build_http_session,
        cancel: Optional[threading.Event] = None,
    ):
        self.cfg = cfg.validate()
        self.gate = AdmissionGate(cfg.concurrent_requests)
        self.cookies = SharedCookieJar()
        self.cancel = cancel
        self._session_factory = session_factory
        self._local = threading.local()
        self._sessions: list = []
        self._sessions_lock = threading.Lock()

    def __enter__(self) -> "CognosSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        """Close every per-thread HTTP session created so far."""
        with self._sessions_lock:
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.close()

    def _http(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._session_factory(self.cfg, self.cookies)
            self._local.session = session
            with self._sessions_lock:
                self._sessions.append(session)
        return session

    def absolute_url(self, link: str) -> str:
        """Join a server-relative link onto the base URL; absolute URLs pass through."""
        if link.startswith(("http://", "https://")):
            return link
        if not link.startswith("/"):
            link = "/" + link
        return self.cfg.url + link

    def pause(self, seconds: float, cancel: Optional[threading.Event] = None) -> None:
        pause(seconds, cancel if cancel is not None else self.cancel)

    def request(self, method: str, link: str, body: str = "",
                cancel: Optional[threading.Event] = None) -> str:
        """
        Send one request to Cognos and return the response body.

        The admission slot is held for the whole retry loop, so retries of a
        struggling request never let extra requests through the gate.

        Args:
            method: HTTP method ("GET" or "POST")
            link: Server-relative link (as built by cognos_links) or absolute URL
            body: Form-encoded request body; empty for none
            cancel: Overrides the session's cancel event for this call

        Returns:
            Response body as text

        Raises:
            TransportError: Non-200/non-401 status, or every attempt failed
            GateTimeoutError: No request slot within acquire_timeout_sec
            OperationCancelled: Cancel event set while waiting
        """
        return self._send(method, link, body, cancel, decode_body)

    def request_bytes(self, method: str, link: str, body: str = "",
                      cancel: Optional[threading.Event] = None) -> bytes:
        """Same as request(), but return the body bytes exactly as sent by the server."""
        return self._send(method, link, body, cancel, raw_body)

    def _send(self, method: str, link: str, body: str,
              cancel: Optional[threading.Event], read: Callable):
        cancel = cancel if cancel is not None else self.cancel
        self.gate.acquire(timeout=self.cfg.acquire_timeout_sec, cancel=cancel)
        try:
            return self._request_with_retries(method, link, body, cancel, read)
        finally:
            self.gate.release()

    def _request_with_retries(self, method: str, link: str, body: str,
                              cancel: Optional[threading.Event], read: Callable):
        url = self.absolute_url(link)
        headers = {}
        if body:
            headers["Content-Type"] = "application/x-www-form-urlencoded"

        attempts = self.cfg.retry_count + 1
        last_error = None
        last_status = None

        for attempt in range(1, attempts + 1):
            if attempt > 1:
                pause(self.cfg.retry_delay_sec, cancel)

            try:
                resp = self._http().request(
                    method,
                    url,
                    data=body or None,
                    headers=headers,
                    timeout=self.cfg.http_timeout_sec,
                )
            except requests.RequestException as e:
                last_error = f"{type(e).__name__}: {e}"
                last_status = None
                print(f"[Retry] {method} {link} attempt {attempt}/{attempts} failed: {last_error}", file=sys.stderr)
                continue

            with resp:
                if resp.status_code == 401:
                    # Cognos hands out 401s at random during normal operation
                    last_error = "HTTP 401: Unauthorized"
                    last_status = 401
                    print(f"[Auth] 401 from Cognos for {link} (attempt {attempt}/{attempts}). "
                          "Invalid password, or Cognos being flaky; retrying", file=sys.stderr)
                    continue

                if resp.status_code != 200:
                    try:
                        phrase = HTTPStatus(resp.status_code).phrase
                    except ValueError:
                        phrase = "Unknown"
                    raise TransportError(
                        f"Cognos returned HTTP {resp.status_code} {phrase} for {link}",
                        link=link,
                        status_code=resp.status_code,
                    )

                return read(resp)

        raise TransportError(
            f"Cognos request to {link} failed after {attempts} attempts ({last_error})",
            link=link,
            status_code=last_status,
        )
