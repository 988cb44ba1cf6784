"""
QR-code login.

Used only at bootstrap when no refresh token is available: the user scans a
QR code with the mobile app, and polling the passport service eventually
yields a refresh token.
"""

import base64
import json
import logging
import threading
from enum import Enum
from typing import Callable, Optional

import requests
from requests import Session

from aliyundrive_fuse.drive_client.client import new_session, parse_json, raise_for_response, send
from aliyundrive_fuse.errors import (
    DriveError,
    FatalError,
    LoginCancelledError,
    LoginFailedError,
)
from aliyundrive_fuse.models import QrPollResult, QrSession, QrStatus

logger = logging.getLogger(__name__)

PASSPORT_URL = "https://passport.aliyundrive.com/newlogin/qrcode"
QR_PARAMS = {"appName": "aliyun_drive", "fromSite": "52", "appEntrance": "web"}

DEFAULT_POLL_INTERVAL = 3
DEFAULT_MAX_POLLS = 10


class LoginState(str, Enum):
    INITIALIZING = "initializing"
    AWAITING_SCAN = "awaiting_scan"
    SCANNED = "scanned"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"


class QrCodeScanner:
    """Talks to the passport QR endpoints."""

    def __init__(self, session: Optional[Session] = None, timeout: float = 30):
        self._session = session or new_session()
        self._timeout = timeout

    def generate(self) -> QrSession:
        response = send(self._session, "GET", f"{PASSPORT_URL}/generate.do",
                        params=QR_PARAMS, timeout=self._timeout)
        raise_for_response(response)
        data = _content_data(parse_json(response))
        try:
            return QrSession(t=str(data["t"]), ck=data["ck"], qr_content=data["codeContent"])
        except KeyError as e:
            raise FatalError("Malformed QR code response", cause=e) from e

    def query(self, qr: QrSession) -> QrPollResult:
        response = send(self._session, "POST", f"{PASSPORT_URL}/query.do",
                        params=QR_PARAMS, data={"t": qr.t, "ck": qr.ck}, timeout=self._timeout)
        raise_for_response(response)
        data = _content_data(parse_json(response))
        try:
            status = QrStatus(data.get("qrCodeStatus"))
        except ValueError as e:
            raise FatalError(f"Unknown QR status: {data.get('qrCodeStatus')}", cause=e) from e

        refresh_token = None
        if status is QrStatus.CONFIRMED:
            refresh_token = _refresh_token_from_biz_ext(data.get("bizExt"))
        return QrPollResult(status=status, refresh_token=refresh_token)


def _content_data(body) -> dict:
    content = body.get("content") if isinstance(body, dict) else None
    data = content.get("data") if isinstance(content, dict) else None
    if not isinstance(data, dict):
        raise FatalError("QR response has no content.data")
    return data


def _refresh_token_from_biz_ext(biz_ext: Optional[str]) -> Optional[str]:
    """bizExt is base64-encoded JSON carrying the mobile login result."""
    if not biz_ext:
        return None
    try:
        decoded = json.loads(base64.b64decode(biz_ext).decode("utf-8", errors="replace"))
        return decoded["pds_login_result"]["refreshToken"]
    except (ValueError, KeyError, TypeError) as e:
        logger.error(f"Could not read refresh token from login result: {e}")
        return None


class LoginFlow:
    """
    Poll-driven state machine:
    INITIALIZING -> AWAITING_SCAN -> SCANNED -> CONFIRMED, or -> EXPIRED.

    Errors on a single poll are logged and polling continues; only the end of
    the poll budget, an expired/cancelled code, or cancellation by the caller
    terminate the flow with LoginFailedError.
    """

    def __init__(self, scanner: QrCodeScanner,
                 poll_interval: float = DEFAULT_POLL_INTERVAL,
                 max_polls: int = DEFAULT_MAX_POLLS,
                 sleep: Optional[Callable[[float], None]] = None,
                 cancel_event: Optional[threading.Event] = None):
        self.scanner = scanner
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.cancel_event = cancel_event or threading.Event()
        self._sleep = sleep or self.cancel_event.wait
        self.state = LoginState.INITIALIZING
        self.session: Optional[QrSession] = None

    def start(self) -> QrSession:
        self.session = self.scanner.generate()
        self.state = LoginState.AWAITING_SCAN
        return self.session

    def cancel(self) -> None:
        self.cancel_event.set()

    def run(self, on_qr_ready: Optional[Callable[[QrSession], None]] = None) -> str:
        if self.session is None:
            self.start()
        if on_qr_ready:
            on_qr_ready(self.session)

        for attempt in range(1, self.max_polls + 1):
            self._sleep(self.poll_interval)
            if self.cancel_event.is_set():
                self.state = LoginState.EXPIRED
                raise LoginCancelledError("Login cancelled")

            try:
                result = self.scanner.query(self.session)
            except (DriveError, requests.RequestException) as e:
                logger.warning(f"QR status poll {attempt}/{self.max_polls} failed: {e}")
                continue

            if result.status is QrStatus.NEW:
                continue
            if result.status is QrStatus.SCANED:
                if self.state is not LoginState.SCANNED:
                    logger.info("QR code scanned, waiting for confirmation in the app")
                self.state = LoginState.SCANNED
                continue
            if result.status is QrStatus.CONFIRMED:
                if not result.refresh_token:
                    self.state = LoginState.EXPIRED
                    raise LoginFailedError("Login confirmed but no refresh token was returned")
                self.state = LoginState.CONFIRMED
                logger.info("Login confirmed")
                return result.refresh_token

            # EXPIRED / CANCELED: the code cannot come back to life
            self.state = LoginState.EXPIRED
            raise LoginFailedError(f"QR code {result.status.value.lower()}",
                                   details={"status": result.status.value})

        self.state = LoginState.EXPIRED
        raise LoginFailedError(f"Login not confirmed after {self.max_polls} polls")
