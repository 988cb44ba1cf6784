# aliyundrive_fuse/drive_client/client.py
"""HTTP plumbing shared by the drive API and the token endpoint."""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import requests
from requests import Response, Session

from aliyundrive_fuse.config.manager import MOBILE_TOKEN_PREFIX, DriveConfig
from aliyundrive_fuse.errors import (
    DriveError,
    FatalError,
    RefreshTokenRevokedError,
    TransientError,
    map_http_error,
)
from aliyundrive_fuse.models import TokenResponse

LOGGER = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/110.0.0.0 Safari/537.36"
REFERER = "https://www.aliyundrive.com/"

# Remote error codes that mean the refresh token itself is no good
REVOKED_TOKEN_CODES = ("InvalidParameter.RefreshToken", "RefreshTokenExpired", "InvalidRefreshToken")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff. `sleep` is injectable so tests run instantly."""
    max_attempts: int = 4
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False)

    def delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        return min(self.initial_delay * (self.multiplier ** (attempt - 1)), self.max_delay)


def new_session() -> Session:
    session = requests.Session()
    session.headers.update({"User-Agent": USER_AGENT, "Referer": REFERER})
    return session


def raise_for_response(response: Response) -> None:
    """Translate a non-2xx response into the matching DriveError."""
    if response.ok:
        return
    code = None
    message = response.reason or "Unknown drive API error"
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        code = body.get("code")
        message = body.get("message") or message
    LOGGER.debug(f"Drive API error {response.status_code} {code}: {message}")
    raise map_http_error(response.status_code, code, message)


def parse_json(response: Response) -> Dict[str, Any]:
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError as e:
        raise FatalError(f"Non-JSON response: {response.text[:200]}", cause=e) from e


def send(session: Session, method: str, url: str, **kwargs) -> Response:
    """Issue one request, turning transport failures into TransientError."""
    try:
        return session.request(method, url, **kwargs)
    except (requests.ConnectionError, requests.Timeout) as e:
        raise TransientError(f"Network error calling {url}: {e}", cause=e) from e
    except requests.RequestException as e:
        raise FatalError(f"Request to {url} failed: {e}", cause=e) from e


class AuthClient:
    """Exchanges a refresh token for an access token."""

    def __init__(self, config: DriveConfig, session: Optional[Session] = None, timeout: float = 30):
        self._config = config
        self._session = session or new_session()
        self._timeout = timeout

    def refresh(self, refresh_token: str) -> TokenResponse:
        """
        Exchange `refresh_token`. App-issued tokens carry MOBILE_TOKEN_PREFIX;
        it selects the app endpoint and is kept on the rotated token.
        """
        mobile = refresh_token.startswith(MOBILE_TOKEN_PREFIX)
        if mobile:
            refresh_token = refresh_token[len(MOBILE_TOKEN_PREFIX):]
        payload = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        if self._config.app_id:
            payload["app_id"] = self._config.app_id

        response = send(self._session, "POST", self._config.token_url(mobile),
                        json=payload, timeout=self._timeout)
        if response.status_code in (400, 401):
            try:
                code = response.json().get("code", "")
            except (ValueError, AttributeError):
                code = ""
            if code in REVOKED_TOKEN_CODES or response.status_code == 401:
                raise RefreshTokenRevokedError(
                    "Refresh token is invalid or revoked",
                    details={"status_code": response.status_code, "code": code},
                )
        raise_for_response(response)
        data = parse_json(response)

        rotated = data.get("refresh_token") or refresh_token
        if mobile:
            rotated = MOBILE_TOKEN_PREFIX + rotated
        try:
            return TokenResponse(
                access_token=data["access_token"],
                refresh_token=rotated,
                expires_in=int(data.get("expires_in", 7200)),
                drive_id=data.get("default_drive_id"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise FatalError("Malformed token response", cause=e) from e

    def __call__(self, refresh_token: str) -> TokenResponse:
        return self.refresh(refresh_token)


def describe(error: DriveError) -> str:
    code = error.details.get("code")
    return f"{type(error).__name__}({code})" if code else type(error).__name__
