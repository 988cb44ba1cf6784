import logging
import math
from typing import Any, Dict, List, Optional

from requests import Response, Session

from aliyundrive_fuse.auth import TokenManager
from aliyundrive_fuse.config.manager import DriveConfig
from aliyundrive_fuse.drive_client.client import (
    RetryPolicy,
    describe,
    new_session,
    parse_json,
    raise_for_response,
    send,
)
from aliyundrive_fuse.errors import (
    RETRYABLE_ERRORS,
    ConflictError,
    FatalError,
    UnauthorizedError,
)
from aliyundrive_fuse.models import Entry, UploadSession

LOGGER = logging.getLogger(__name__)

ROOT_ID = "root"
LIST_PAGE_SIZE = 200


class AliyunDrive:
    """
    Stateless transport for the drive API.

    Every call goes through `_call`, which owns the retry policy:
    transient and rate-limit failures back off and retry, a 401 forces one
    credential refresh and one retry, anything else propagates as-is.
    """

    def __init__(self, config: DriveConfig, token_manager: TokenManager,
                 session: Optional[Session] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 timeout: float = 30):
        self._config = config
        self._tokens = token_manager
        self._session = session or new_session()
        self._retry = retry_policy or RetryPolicy()
        self._timeout = timeout

    @property
    def config(self) -> DriveConfig:
        return self._config

    # ----------------------------------------------------------------
    # Retry core
    # ----------------------------------------------------------------

    def _call(self, method: str, url: str, *, authorized: bool = True,
              payload: Optional[Dict[str, Any]] = None,
              headers: Optional[Dict[str, str]] = None,
              data: Optional[bytes] = None) -> Response:
        attempt = 1
        refreshed = False
        while True:
            request_headers = dict(headers or {})
            body = payload
            cred = None
            if authorized:
                cred = self._tokens.get_valid_credential()
                request_headers["Authorization"] = f"Bearer {cred.access_token}"
                if body is not None:
                    body = dict(body, drive_id=cred.drive_id)
            try:
                response = send(self._session, method, url, json=body, data=data,
                                headers=request_headers, timeout=self._timeout)
                raise_for_response(response)
                return response
            except UnauthorizedError:
                if refreshed or not authorized:
                    raise
                LOGGER.info(f"Access token rejected by {url}, forcing refresh")
                self._tokens.force_refresh(rejected=cred)
                refreshed = True
            except RETRYABLE_ERRORS as e:
                if attempt >= self._retry.max_attempts:
                    LOGGER.error(f"{method} {url} failed after {attempt} attempts: {describe(e)}")
                    raise
                delay = self._retry.delay(attempt)
                LOGGER.warning(f"{method} {url} failed ({describe(e)}), retry {attempt} in {delay:.1f}s")
                self._retry.sleep(delay)
                attempt += 1

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST to the API; the account's drive_id is filled in per request."""
        response = self._call("POST", f"{self._config.api_base_url}{path}", payload=payload)
        return parse_json(response)

    # ----------------------------------------------------------------
    # Metadata
    # ----------------------------------------------------------------

    def list_children(self, parent_id: str, parent_path: str) -> List[Entry]:
        """All children of `parent_id`, in the order the API returns them."""
        LOGGER.debug(f"Listing children of {parent_path} ({parent_id})")
        entries: List[Entry] = []
        marker = ""
        while True:
            data = self._post("/adrive/v3/file/list", {
                "parent_file_id": parent_id,
                "limit": LIST_PAGE_SIZE,
                "all": False,
                "fields": "*",
                "order_by": "updated_at",
                "order_direction": "DESC",
                "marker": marker,
            })
            items = data.get("items")
            if not isinstance(items, list):
                raise FatalError(f"Malformed listing for {parent_path}")
            entries.extend(self._to_entry(item, parent_path) for item in items)
            marker = data.get("next_marker") or ""
            if not marker:
                return entries

    def get_file(self, file_id: str, parent_path: str) -> Entry:
        data = self._post("/v2/file/get", {"file_id": file_id})
        return self._to_entry(data, parent_path)

    def get_quota(self) -> Dict[str, int]:
        data = self._post("/adrive/v1/user/driveCapacityDetails", {})
        return {
            "used": int(data.get("drive_used_size", 0)),
            "total": int(data.get("drive_total_size", 0)),
        }

    # ----------------------------------------------------------------
    # Mutations
    # ----------------------------------------------------------------

    def create_folder(self, parent_id: str, name: str, parent_path: str) -> Entry:
        LOGGER.info(f"Creating folder '{name}' in {parent_path}")
        data = self._post("/adrive/v2/file/createWithFolders", {
            "parent_file_id": parent_id,
            "name": name,
            "type": "folder",
            "check_name_mode": "refuse",
        })
        if data.get("exist"):
            raise ConflictError(f"'{name}' already exists in {parent_path}")
        item = dict(data, name=data.get("file_name") or name, type="folder", parent_file_id=parent_id)
        return self._to_entry(item, parent_path)

    def rename(self, file_id: str, name: str) -> None:
        LOGGER.info(f"Renaming {file_id} to '{name}'")
        self._post("/v3/file/update", {
            "file_id": file_id,
            "name": name,
            "check_name_mode": "refuse",
        })

    def move(self, file_id: str, to_parent_id: str, new_name: Optional[str] = None) -> None:
        LOGGER.info(f"Moving {file_id} to parent {to_parent_id}")
        payload = {
            "file_id": file_id,
            "to_parent_file_id": to_parent_id,
            "check_name_mode": "refuse",
        }
        if new_name:
            payload["new_name"] = new_name
        data = self._post("/v3/file/move", payload)
        if data.get("exist"):
            raise ConflictError(f"'{new_name or file_id}' already exists in {to_parent_id}")

    def trash(self, file_id: str) -> None:
        LOGGER.info(f"Moving {file_id} to recycle bin")
        self._post("/v2/recyclebin/trash", {"file_id": file_id})

    def delete(self, file_id: str) -> None:
        LOGGER.info(f"Permanently deleting {file_id}")
        self._post("/v3/file/delete", {"file_id": file_id})

    def remove(self, file_id: str, trash: bool = True) -> None:
        # PDS has no recycle bin; its trash endpoint always fails
        if trash and not self._config.is_pds:
            self.trash(file_id)
        else:
            self.delete(file_id)

    # ----------------------------------------------------------------
    # Content
    # ----------------------------------------------------------------

    def create_upload(self, parent_id: str, name: str, size: int, chunk_size: int,
                      check_name_mode: str = "refuse") -> UploadSession:
        part_count = max(1, math.ceil(size / chunk_size))
        LOGGER.info(f"Creating upload '{name}' ({size} bytes, {part_count} parts) in {parent_id}")
        data = self._post("/adrive/v2/file/createWithFolders", {
            "parent_file_id": parent_id,
            "name": name,
            "type": "file",
            "check_name_mode": check_name_mode,
            "size": size,
            "part_info_list": [{"part_number": i} for i in range(1, part_count + 1)],
        })
        if data.get("exist"):
            raise ConflictError(f"'{name}' already exists in {parent_id}")
        try:
            parts = sorted(data.get("part_info_list") or [], key=lambda p: p["part_number"])
            return UploadSession(
                file_id=data["file_id"],
                upload_id=data.get("upload_id", ""),
                part_urls=[p["upload_url"] for p in parts],
            )
        except (KeyError, TypeError) as e:
            raise FatalError(f"Malformed upload response for '{name}'", cause=e) from e

    def upload_part(self, upload_url: str, data: bytes) -> None:
        # Pre-signed URL: no bearer token
        self._call("PUT", upload_url, authorized=False, data=data)

    def complete_upload(self, file_id: str, upload_id: str, parent_path: str) -> Entry:
        data = self._post("/v2/file/complete", {"file_id": file_id, "upload_id": upload_id})
        entry = self._to_entry(data, parent_path)
        LOGGER.info(f"Upload complete: {entry.path}")
        return entry

    def get_download_url(self, file_id: str) -> str:
        data = self._post("/v2/file/get_download_url", {"file_id": file_id})
        url = data.get("url") or data.get("internal_url")
        if not url:
            raise FatalError(f"No download URL for {file_id}")
        return url

    def download_range(self, url: str, offset: int, size: int) -> bytes:
        if size <= 0:
            return b""
        headers = {"Range": f"bytes={offset}-{offset + size - 1}"}
        response = self._call("GET", url, authorized=False, headers=headers)
        if response.status_code == 206:
            return response.content
        # Range ignored: the body is the whole object
        LOGGER.debug(f"Range not honoured for {offset}+{size}, slicing full body")
        return response.content[offset:offset + size]

    def _to_entry(self, item: Dict[str, Any], parent_path: str) -> Entry:
        try:
            return Entry.from_api(item, parent_path)
        except (KeyError, TypeError, ValueError) as e:
            raise FatalError("Malformed file item in response", cause=e) from e
