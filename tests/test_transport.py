from __future__ import annotations

import base64
import codecs
import threading
import time
import urllib.request
from http.cookiejar import Cookie
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest
import requests

from cognos_errors import GateTimeoutError, OperationCancelled, TransportError
from cognos_transport import (
    AdmissionGate,
    CognosSession,
    PublicSuffixCookiePolicy,
    SharedCookieJar,
    decode_body,
    pause,
)
from cognos_pages import ScriptedHttp, make_config, make_response


CITY_CSV = "Student,City\nAda,Montréal\nGrace,Zürich\n".encode("utf-8")


def _session(http: ScriptedHttp, **cfg_overrides) -> CognosSession:
    return CognosSession(make_config(**cfg_overrides), session_factory=lambda cfg, cookies: http)


def _cookie(domain: str, name: str = "cam_passport", value: str = "abc") -> Cookie:
    return Cookie(
        version=0, name=name, value=value, port=None, port_specified=False,
        domain=domain, domain_specified=True, domain_initial_dot=domain.startswith("."),
        path="/", path_specified=True, secure=False, expires=None, discard=True,
        comment=None, comment_url=None, rest={},
    )


# =============================================================================
# REQUEST / RETRY
# =============================================================================

def test_request_returns_body_and_joins_base_url() -> None:
    http = ScriptedHttp([make_response(200, "<html>hello</html>")])
    session = _session(http)

    body = session.request("GET", "/ibmcognos/cgi-bin/cognos.cgi?b_action=xts.run")

    assert body == "<html>hello</html>"
    assert len(http.calls) == 1
    call = http.calls[0]
    assert call["method"] == "GET"
    assert call["url"] == "https://cognos.example.org/ibmcognos/cgi-bin/cognos.cgi?b_action=xts.run"
    assert call["data"] is None
    assert call["timeout"] == 30.0
    assert session.gate.inflight == 0


def test_absolute_links_pass_through() -> None:
    session = _session(ScriptedHttp([]))
    assert session.absolute_url("https://other.example.org/x?y=1") == "https://other.example.org/x?y=1"
    assert session.absolute_url("relative/path") == "https://cognos.example.org/relative/path"


def test_post_body_is_form_encoded() -> None:
    http = ScriptedHttp([make_response(200, "done")])
    session = _session(http)

    session.request("POST", "/ibmcognos/cgi-bin/cognos.cgi", "ui.action=wait&cv.id=_NS_")

    call = http.calls[0]
    assert call["data"] == "ui.action=wait&cv.id=_NS_"
    assert call["headers"]["Content-Type"] == "application/x-www-form-urlencoded"


def test_401_is_retried_until_success() -> None:
    http = ScriptedHttp([make_response(401), make_response(401), make_response(200, "finally")])
    session = _session(http, retry_count=2)

    assert session.request("GET", "/x") == "finally"
    assert len(http.calls) == 3


def test_401_on_every_attempt_fails_after_retry_count_retries() -> None:
    http = ScriptedHttp([make_response(401) for _ in range(10)])
    session = _session(http, retry_count=3, retry_delay_sec=0.05)

    t0 = time.monotonic()
    with pytest.raises(TransportError) as excinfo:
        session.request("GET", "/ibmcognos/cgi-bin/cognos.cgi?m_folder=abc")
    elapsed = time.monotonic() - t0

    assert len(http.calls) == 4
    assert elapsed >= 3 * 0.05
    assert excinfo.value.status_code == 401
    assert "/ibmcognos/cgi-bin/cognos.cgi?m_folder=abc" in str(excinfo.value)
    assert session.gate.inflight == 0


def test_transport_errors_are_retried() -> None:
    http = ScriptedHttp([
        requests.ConnectionError("connection reset by peer"),
        requests.Timeout("read timed out"),
        make_response(200, "recovered"),
    ])
    session = _session(http, retry_count=2)

    assert session.request("GET", "/x") == "recovered"
    assert len(http.calls) == 3


def test_transport_errors_exhaust_retries() -> None:
    http = ScriptedHttp([requests.ConnectionError("refused") for _ in range(5)])
    session = _session(http, retry_count=1)

    with pytest.raises(TransportError) as excinfo:
        session.request("GET", "/x")

    assert len(http.calls) == 2
    assert excinfo.value.status_code is None
    assert "ConnectionError" in str(excinfo.value)


def test_other_status_codes_are_fatal_without_retry() -> None:
    http = ScriptedHttp([make_response(500, "boom"), make_response(200, "never")])
    session = _session(http, retry_count=5)

    with pytest.raises(TransportError) as excinfo:
        session.request("GET", "/x")

    assert len(http.calls) == 1
    assert excinfo.value.status_code == 500
    assert "Internal Server Error" in str(excinfo.value)
    assert session.gate.inflight == 0


def test_cancel_during_retry_delay() -> None:
    cancel = threading.Event()
    http = ScriptedHttp([make_response(401), make_response(200, "too late")])
    session = _session(http, retry_count=3, retry_delay_sec=10.0)
    threading.Timer(0.05, cancel.set).start()

    t0 = time.monotonic()
    with pytest.raises(OperationCancelled):
        session.request("GET", "/x", cancel=cancel)

    assert time.monotonic() - t0 < 5.0
    assert len(http.calls) == 1
    assert session.gate.inflight == 0


def test_cancelled_session_sends_nothing() -> None:
    cancel = threading.Event()
    cancel.set()
    http = ScriptedHttp([make_response(200, "never")])
    session = CognosSession(make_config(), session_factory=lambda cfg, cookies: http, cancel=cancel)

    with pytest.raises(OperationCancelled):
        session.request("GET", "/x")

    assert http.calls == []
    assert session.gate.inflight == 0


# =============================================================================
# ADMISSION GATE
# =============================================================================

@pytest.mark.parametrize("limit", [1, 2, 3])
def test_concurrent_requests_never_exceed_limit(limit: int) -> None:
    http = ScriptedHttp([], delay=0.02)
    session = _session(http, concurrent_requests=limit)
    errors: list = []

    def _worker():
        try:
            for _ in range(3):
                session.request("GET", "/x")
        except Exception as e:  # pragma: no cover - surfaced by the assert below
            errors.append(e)

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(http.calls) == 24
    assert http.max_active <= limit
    assert session.gate.inflight == 0


def test_gate_acquire_times_out() -> None:
    gate = AdmissionGate(1)
    gate.acquire()

    with pytest.raises(GateTimeoutError):
        gate.acquire(timeout=0.05)

    gate.release()
    gate.acquire(timeout=0.05)
    assert gate.inflight == 1


def test_gate_acquire_can_be_cancelled() -> None:
    gate = AdmissionGate(1)
    gate.acquire()
    cancel = threading.Event()
    threading.Timer(0.05, cancel.set).start()

    with pytest.raises(OperationCancelled):
        gate.acquire(cancel=cancel)

    assert gate.inflight == 1


def test_gate_hands_slot_to_waiter_on_release() -> None:
    gate = AdmissionGate(1)
    gate.acquire()
    acquired = threading.Event()

    def _waiter():
        gate.acquire(timeout=2.0)
        acquired.set()

    t = threading.Thread(target=_waiter)
    t.start()
    time.sleep(0.05)
    assert not acquired.is_set()

    gate.release()
    t.join()
    assert acquired.is_set()
    assert gate.inflight == 1


def test_gate_rejects_extra_release() -> None:
    gate = AdmissionGate(2)
    with pytest.raises(RuntimeError):
        gate.release()


def test_pause_raises_when_cancelled() -> None:
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(OperationCancelled):
        pause(5.0, cancel)


# =============================================================================
# SESSIONS AND COOKIES
# =============================================================================

def test_each_thread_gets_its_own_http_session_sharing_one_jar() -> None:
    made = []

    def _factory(cfg, cookies):
        http = ScriptedHttp([])
        http.cookies = cookies
        made.append(http)
        return http

    session = CognosSession(make_config(), session_factory=_factory)
    session.request("GET", "/main-thread")

    t = threading.Thread(target=session.request, args=("GET", "/other-thread"))
    t.start()
    t.join()
    session.request("GET", "/main-thread-again")

    assert len(made) == 2
    assert made[0].cookies is made[1].cookies is session.cookies

    session.close()
    assert all(h.closed for h in made)


def test_shared_jar_iterates_snapshot() -> None:
    jar = SharedCookieJar()
    jar.set_cookie(_cookie("cognos.example.org", name="a"))
    jar.set_cookie(_cookie("cognos.example.org", name="b"))

    names = set()
    for cookie in jar:
        names.add(cookie.name)
        jar.set_cookie(_cookie("cognos.example.org", name=cookie.name + "_copy"))

    assert names == {"a", "b"}
    assert len(jar) == 4


def test_cookie_policy_rejects_public_suffix_domains() -> None:
    policy = PublicSuffixCookiePolicy()
    request = urllib.request.Request("https://evil.github.io/")
    assert not policy.set_ok_domain(_cookie(".github.io"), request)

    request = urllib.request.Request("https://www.example.gov/")
    assert policy.set_ok_domain(_cookie(".example.gov"), request)


# =============================================================================
# BODY DECODING
# =============================================================================

def _raw_response(content: bytes, content_type: str) -> requests.Response:
    resp = make_response(200)
    resp._content = content
    resp.encoding = None
    resp.headers["Content-Type"] = content_type
    return resp


def test_body_without_charset_decodes_as_utf8() -> None:
    assert decode_body(_raw_response(CITY_CSV, "text/csv")) == CITY_CSV.decode("utf-8")


def test_body_byte_order_marks_are_honoured() -> None:
    text = "Ada,Montréal\n"
    assert decode_body(_raw_response(codecs.BOM_UTF8 + text.encode("utf-8"), "text/csv")) == text
    assert decode_body(_raw_response(text.encode("utf-16"), "text/csv")) == text


def test_declared_charset_wins() -> None:
    resp = _raw_response("Ada,Montréal\n".encode("iso-8859-1"), "text/csv; charset=ISO-8859-1")
    resp.encoding = "ISO-8859-1"
    assert decode_body(resp) == "Ada,Montréal\n"


# =============================================================================
# REAL HTTP SESSIONS
# =============================================================================

class _PortalHandler(BaseHTTPRequestHandler):
    """Sets a session cookie on /login and records the auth headers of every request."""

    def do_GET(self):
        with self.server.lock:
            self.server.seen[self.path] = {
                "Authorization": self.headers.get("Authorization"),
                "Cookie": self.headers.get("Cookie"),
            }

        cookie = None
        if self.path == "/login":
            body, content_type = b"<html>welcome</html>", "text/html; charset=utf-8"
            cookie = "cam_passport=xyz; Path=/"
        elif self.path == "/report.csv":
            body, content_type = CITY_CSV, "text/csv"
        else:
            body, content_type = b"ok", "text/plain"

        self.send_response(200)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        if cookie:
            self.send_header("Set-Cookie", cookie)
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def portal_server():
    server = ThreadingHTTPServer(("127.0.0.1", 0), _PortalHandler)
    server.seen = {}
    server.lock = threading.Lock()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()
    thread.join()


def _server_config(server):
    return make_config(url=f"http://127.0.0.1:{server.server_address[1]}")


def test_csv_without_charset_comes_back_unmangled(portal_server) -> None:
    with CognosSession(_server_config(portal_server)) as session:
        assert session.request("GET", "/report.csv") == CITY_CSV.decode("utf-8")
        assert session.request_bytes("GET", "/report.csv") == CITY_CSV


def test_basic_auth_and_cookies_reach_requests_from_other_threads(portal_server) -> None:
    results = {}

    with CognosSession(_server_config(portal_server)) as session:
        assert session.request("GET", "/login") == "<html>welcome</html>"

        def _other_thread():
            results["body"] = session.request("GET", "/other")

        t = threading.Thread(target=_other_thread)
        t.start()
        t.join()

        assert len(session._sessions) == 2

    assert results["body"] == "ok"

    expected_auth = "Basic " + base64.b64encode(b"DOMAIN\\tester:secret").decode("ascii")
    login = portal_server.seen["/login"]
    other = portal_server.seen["/other"]
    assert login["Authorization"] == expected_auth
    assert login["Cookie"] is None
    assert other["Authorization"] == expected_auth
    assert "cam_passport=xyz" in other["Cookie"]
