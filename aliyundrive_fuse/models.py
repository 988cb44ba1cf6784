import posixpath
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class EntryKind(str, Enum):
    FILE = "file"
    DIRECTORY = "folder"


def parse_timestamp(value: Optional[str]) -> float:
    """RFC 3339 string from the API -> epoch seconds. Missing values map to 0."""
    if not value:
        return 0.0
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(value).timestamp()
    except ValueError:
        return 0.0


@dataclass(frozen=True)
class Entry:
    """One remote object as seen by the filesystem."""

    id: str
    name: str
    kind: EntryKind
    size: int = 0
    modified_at: float = 0.0
    parent_path: str = ""
    parent_id: Optional[str] = None
    created_at: float = 0.0
    content_hash: Optional[str] = None
    file_extension: Optional[str] = None

    @property
    def is_dir(self) -> bool:
        return self.kind is EntryKind.DIRECTORY

    @property
    def path(self) -> str:
        if not self.parent_path:
            return "/"
        return posixpath.join(self.parent_path, self.name)

    @classmethod
    def root(cls) -> "Entry":
        return cls(id="root", name="", kind=EntryKind.DIRECTORY)

    @classmethod
    def from_api(cls, item: Dict[str, Any], parent_path: str) -> "Entry":
        kind = EntryKind.DIRECTORY if item.get("type") == "folder" else EntryKind.FILE
        return cls(
            id=item["file_id"],
            name=item.get("name", ""),
            kind=kind,
            size=int(item.get("size") or 0),
            modified_at=parse_timestamp(item.get("updated_at")),
            parent_path=parent_path,
            parent_id=item.get("parent_file_id"),
            created_at=parse_timestamp(item.get("created_at")),
            content_hash=item.get("content_hash"),
            file_extension=item.get("file_extension"),
        )


@dataclass(frozen=True)
class Credential:
    access_token: str
    expires_at: float
    drive_id: Optional[str] = None

    def remaining(self, now: float) -> float:
        return self.expires_at - now


@dataclass(frozen=True)
class TokenResponse:
    """Result of one refresh-token exchange. The refresh token rotates."""

    access_token: str
    refresh_token: str
    expires_in: int
    drive_id: Optional[str] = None


@dataclass(frozen=True)
class UploadSession:
    file_id: str
    upload_id: str
    part_urls: List[str] = field(default_factory=list)


class QrStatus(str, Enum):
    NEW = "NEW"
    SCANED = "SCANED"
    EXPIRED = "EXPIRED"
    CANCELED = "CANCELED"
    CONFIRMED = "CONFIRMED"


@dataclass(frozen=True)
class QrSession:
    t: str
    ck: str
    qr_content: str


@dataclass(frozen=True)
class QrPollResult:
    status: QrStatus
    refresh_token: Optional[str] = None
