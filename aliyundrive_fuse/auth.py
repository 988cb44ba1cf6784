import os
import logging
import tempfile
import threading
import time
from concurrent.futures import Future
from typing import Callable, Optional

from aliyundrive_fuse.drive_client.client import RetryPolicy
from aliyundrive_fuse.errors import RETRYABLE_ERRORS, RefreshTokenRevokedError
from aliyundrive_fuse.models import Credential, TokenResponse

logger = logging.getLogger(__name__)

REFRESH_TOKEN_FILE = "refresh_token"
DEFAULT_REFRESH_MARGIN = 60


class TokenStore:
    """Keeps the refresh token in a single file inside the working directory."""

    def __init__(self, workdir: str):
        self.workdir = os.path.expanduser(workdir)
        self.path = os.path.join(self.workdir, REFRESH_TOKEN_FILE)

    def load(self) -> Optional[str]:
        if not os.path.exists(self.path):
            return None
        with open(self.path, 'r', encoding='utf-8') as f:
            token = f.read().strip()
        return token or None

    def save(self, refresh_token: str) -> None:
        """Temp file + os.replace, so a crash never leaves half a token behind."""
        os.makedirs(self.workdir, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".refresh_token.", dir=self.workdir)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(refresh_token)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        logger.debug(f"Saved refresh token to {self.path}")


class TokenManager:
    """
    Owns the access credential and keeps it valid.

    Concurrent callers that need a refresh share a single in-flight exchange:
    the first one performs it, the rest wait on the same Future and see the
    same credential or the same exception.
    """

    def __init__(self, refresh_token: str,
                 refresher: Callable[[str], TokenResponse],
                 store: Optional[TokenStore] = None,
                 margin: float = DEFAULT_REFRESH_MARGIN,
                 retry_policy: Optional[RetryPolicy] = None,
                 clock: Callable[[], float] = time.time):
        if not refresh_token:
            raise ValueError("refresh_token is required")
        self._refresh_token = refresh_token
        self._refresher = refresher
        self._store = store
        self._margin = margin
        self._retry = retry_policy or RetryPolicy()
        self._clock = clock

        self._lock = threading.Lock()
        self._store_lock = threading.Lock()
        self._credential: Optional[Credential] = None
        self._inflight: Optional[Future] = None
        self._fatal: Optional[RefreshTokenRevokedError] = None

    @property
    def refresh_token(self) -> str:
        with self._lock:
            return self._refresh_token

    def get_valid_credential(self) -> Credential:
        return self._refresh(force=False)

    def force_refresh(self, rejected: Optional[Credential] = None) -> Credential:
        """
        Refresh after the server rejected `rejected`. If another caller has
        already replaced that credential, the replacement is returned as is.
        """
        return self._refresh(force=True, rejected=rejected)

    def _refresh(self, force: bool, rejected: Optional[Credential] = None) -> Credential:
        # Freshness check and leader election happen under one lock hold
        with self._lock:
            if self._fatal is not None:
                raise self._fatal
            cred = self._credential
            if cred is not None:
                if not force and cred.remaining(self._clock()) > self._margin:
                    return cred
                if force and rejected is not None and cred is not rejected:
                    return cred
            future = self._inflight
            leader = future is None
            if leader:
                future = Future()
                self._inflight = future
                refresh_token = self._refresh_token

        if not leader:
            logger.debug("Waiting on in-flight token refresh")
            return future.result()

        try:
            response = self._exchange(refresh_token)
        except BaseException as e:
            with self._lock:
                self._inflight = None
                if isinstance(e, RefreshTokenRevokedError):
                    self._fatal = e
            future.set_exception(e)
            raise

        credential = Credential(
            access_token=response.access_token,
            expires_at=self._clock() + response.expires_in,
            drive_id=response.drive_id,
        )
        with self._lock:
            self._credential = credential
            self._refresh_token = response.refresh_token
            self._inflight = None
        future.set_result(credential)
        logger.info(f"Access token refreshed, valid for {response.expires_in}s")

        if self._store is not None:
            self._persist(response.refresh_token)
        return credential

    def _persist(self, refresh_token: str) -> None:
        # Saves are serialised, and a token already rotated out is never written
        with self._store_lock:
            with self._lock:
                if refresh_token != self._refresh_token:
                    logger.debug("Skipping save of a refresh token that was already rotated")
                    return
            try:
                self._store.save(refresh_token)
            except OSError as e:
                logger.error(f"Failed to persist refresh token to {self._store.path}: {e}")

    def _exchange(self, refresh_token: str) -> TokenResponse:
        attempt = 1
        while True:
            try:
                return self._refresher(refresh_token)
            except RefreshTokenRevokedError:
                logger.error("Refresh token rejected. Log in again to obtain a new one.")
                raise
            except RETRYABLE_ERRORS as e:
                if attempt >= self._retry.max_attempts:
                    logger.error(f"Token refresh failed after {attempt} attempts: {e}")
                    raise
                delay = self._retry.delay(attempt)
                logger.warning(f"Token refresh attempt {attempt} failed ({e}), retrying in {delay:.1f}s")
                self._retry.sleep(delay)
                attempt += 1
