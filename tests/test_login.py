import base64
import json
import threading
from unittest.mock import MagicMock

import pytest
import requests

from aliyundrive_fuse.errors import FatalError, LoginCancelledError, LoginFailedError, TransientError
from aliyundrive_fuse.login import LoginFlow, LoginState, QrCodeScanner
from aliyundrive_fuse.models import QrPollResult, QrSession, QrStatus


class ScriptedScanner:
    def __init__(self, results):
        self.results = list(results)
        self.queries = 0
        self.generated = 0

    def generate(self):
        self.generated += 1
        return QrSession(t="1700000000", ck="ck-1", qr_content="https://qr/content")

    def query(self, qr):
        self.queries += 1
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


NEW = QrPollResult(QrStatus.NEW)
SCANNED = QrPollResult(QrStatus.SCANED)


def confirmed(token="rt-1"):
    return QrPollResult(QrStatus.CONFIRMED, refresh_token=token)


@pytest.fixture
def sleeps():
    return []


def make_flow(scanner, sleeps, **kwargs):
    return LoginFlow(scanner, sleep=sleeps.append, **kwargs)


def test_confirmed_on_last_poll(sleeps):
    scanner = ScriptedScanner([NEW] * 9 + [confirmed()])
    flow = make_flow(scanner, sleeps)
    shown = []
    assert flow.run(on_qr_ready=shown.append) == "rt-1"
    assert flow.state is LoginState.CONFIRMED
    assert sleeps == [3] * 10
    assert scanner.queries == 10
    assert shown[0].qr_content == "https://qr/content"


def test_poll_budget_exhausted(sleeps):
    scanner = ScriptedScanner([NEW] * 10)
    flow = make_flow(scanner, sleeps)
    with pytest.raises(LoginFailedError):
        flow.run()
    assert flow.state is LoginState.EXPIRED
    assert scanner.queries == 10


def test_scanned_then_confirmed(sleeps):
    flow = make_flow(ScriptedScanner([NEW, SCANNED, SCANNED, confirmed("rt-9")]), sleeps)
    assert flow.run() == "rt-9"


def test_scan_without_confirmation_expires(sleeps):
    flow = make_flow(ScriptedScanner([SCANNED, NEW]), sleeps, max_polls=2)
    with pytest.raises(LoginFailedError):
        flow.run()
    assert flow.state is LoginState.EXPIRED


@pytest.mark.parametrize("status", [QrStatus.EXPIRED, QrStatus.CANCELED])
def test_dead_code_is_terminal(sleeps, status):
    scanner = ScriptedScanner([NEW, QrPollResult(status), confirmed()])
    flow = make_flow(scanner, sleeps)
    with pytest.raises(LoginFailedError) as excinfo:
        flow.run()
    assert excinfo.value.details == {"status": status.value}
    assert scanner.queries == 2


def test_poll_errors_do_not_end_flow(sleeps):
    scanner = ScriptedScanner([TransientError("blip"), requests.ConnectionError("reset"), confirmed()])
    assert make_flow(scanner, sleeps).run() == "rt-1"
    assert scanner.queries == 3


def test_confirmed_without_token_fails(sleeps):
    flow = make_flow(ScriptedScanner([confirmed(token=None)]), sleeps)
    with pytest.raises(LoginFailedError):
        flow.run()


def test_cancel_stops_polling():
    scanner = ScriptedScanner([NEW] * 10)
    event = threading.Event()

    def sleep(_):
        if scanner.queries == 2:
            event.set()

    flow = LoginFlow(scanner, sleep=sleep, cancel_event=event)
    with pytest.raises(LoginCancelledError):
        flow.run()
    assert scanner.queries == 2


def test_cancel_via_method_with_default_sleep():
    scanner = ScriptedScanner([NEW] * 10)
    flow = LoginFlow(scanner, poll_interval=0)
    flow.cancel()
    with pytest.raises(LoginCancelledError):
        flow.run()
    assert scanner.queries == 0


def test_start_moves_to_awaiting_scan(sleeps):
    flow = make_flow(ScriptedScanner([]), sleeps)
    assert flow.state is LoginState.INITIALIZING
    flow.start()
    assert flow.state is LoginState.AWAITING_SCAN


def passport_response(data):
    response = requests.Response()
    response.status_code = 200
    response._content = json.dumps({"content": {"data": data}}).encode()
    return response


def biz_ext(refresh_token):
    payload = {"pds_login_result": {"refreshToken": refresh_token}}
    return base64.b64encode(json.dumps(payload).encode()).decode()


class TestQrCodeScanner:

    def test_generate(self):
        session = MagicMock()
        session.request.return_value = passport_response(
            {"t": 1700000000, "ck": "ck-1", "codeContent": "https://qr/x"})
        qr = QrCodeScanner(session=session).generate()
        assert qr == QrSession(t="1700000000", ck="ck-1", qr_content="https://qr/x")
        assert session.request.call_args.args[1].endswith("/generate.do")

    def test_query_confirmed_reads_biz_ext(self):
        session = MagicMock()
        session.request.return_value = passport_response(
            {"qrCodeStatus": "CONFIRMED", "bizExt": biz_ext("rt-42")})
        result = QrCodeScanner(session=session).query(QrSession("t", "ck", "c"))
        assert result == QrPollResult(QrStatus.CONFIRMED, refresh_token="rt-42")
        assert session.request.call_args.kwargs["data"] == {"t": "t", "ck": "ck"}

    def test_query_pending(self):
        session = MagicMock()
        session.request.return_value = passport_response({"qrCodeStatus": "NEW"})
        assert QrCodeScanner(session=session).query(QrSession("t", "ck", "c")).status is QrStatus.NEW

    def test_garbled_biz_ext_gives_no_token(self):
        session = MagicMock()
        session.request.return_value = passport_response(
            {"qrCodeStatus": "CONFIRMED", "bizExt": "bm90IGpzb24="})
        result = QrCodeScanner(session=session).query(QrSession("t", "ck", "c"))
        assert result.refresh_token is None

    def test_unknown_status_is_fatal(self):
        session = MagicMock()
        session.request.return_value = passport_response({"qrCodeStatus": "WEIRD"})
        with pytest.raises(FatalError):
            QrCodeScanner(session=session).query(QrSession("t", "ck", "c"))

    def test_missing_content_is_fatal(self):
        session = MagicMock()
        response = requests.Response()
        response.status_code = 200
        response._content = b'{"content": null}'
        session.request.return_value = response
        with pytest.raises(FatalError):
            QrCodeScanner(session=session).generate()
