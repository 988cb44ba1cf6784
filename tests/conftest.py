"""Shared fixtures: an in-memory drive and a controllable clock."""

import itertools

import pytest

from aliyundrive_fuse.cache import EntryCache
from aliyundrive_fuse.errors import ConflictError, NotFoundError
from aliyundrive_fuse.fs.drive_fs import AliyunDriveFS
from aliyundrive_fuse.fs.resolver import PathResolver
from aliyundrive_fuse.models import Entry, EntryKind, UploadSession


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeDrive:
    """Minimal stand-in for AliyunDrive backed by dicts."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.items = {"root": {"name": "", "kind": EntryKind.DIRECTORY, "parent": None, "data": b""}}
        self.calls = []
        self.trashed = []
        self.deleted = []
        self.uploads = {}

    # --- test helpers ---

    def add(self, parent_id, name, kind=EntryKind.FILE, data=b""):
        item_id = f"id{next(self._ids)}"
        self.items[item_id] = {"name": name, "kind": kind, "parent": parent_id, "data": data}
        return item_id

    def add_dir(self, parent_id, name):
        return self.add(parent_id, name, EntryKind.DIRECTORY)

    def count(self, op):
        return sum(1 for call in self.calls if call[0] == op)

    def _entry(self, item_id, parent_path):
        item = self.items[item_id]
        return Entry(id=item_id, name=item["name"], kind=item["kind"], size=len(item["data"]),
                     modified_at=1.0, parent_path=parent_path, parent_id=item["parent"])

    def _children(self, parent_id):
        return [i for i, item in self.items.items() if item["parent"] == parent_id]

    # --- drive API ---

    def list_children(self, parent_id, parent_path):
        self.calls.append(("list_children", parent_id))
        if parent_id not in self.items:
            raise NotFoundError(parent_id)
        return [self._entry(i, parent_path) for i in self._children(parent_id)]

    def get_file(self, file_id, parent_path):
        self.calls.append(("get_file", file_id))
        return self._entry(file_id, parent_path)

    def create_folder(self, parent_id, name, parent_path):
        self.calls.append(("create_folder", parent_id, name))
        if any(self.items[i]["name"] == name for i in self._children(parent_id)):
            raise ConflictError(name)
        return self._entry(self.add_dir(parent_id, name), parent_path)

    def remove(self, file_id, trash=True):
        self.calls.append(("remove", file_id, trash))
        (self.trashed if trash else self.deleted).append(file_id)
        for child in self._children(file_id):
            self.items.pop(child)
        self.items.pop(file_id)

    def rename(self, file_id, name):
        self.calls.append(("rename", file_id, name))
        self.items[file_id]["name"] = name

    def move(self, file_id, to_parent_id, new_name=None):
        self.calls.append(("move", file_id, to_parent_id, new_name))
        self.items[file_id]["parent"] = to_parent_id
        if new_name:
            self.items[file_id]["name"] = new_name

    def create_upload(self, parent_id, name, size, chunk_size, check_name_mode="refuse"):
        self.calls.append(("create_upload", parent_id, name, size, check_name_mode))
        parts = max(1, -(-size // chunk_size))
        upload_id = f"up{next(self._ids)}"
        self.uploads[upload_id] = {"parent": parent_id, "name": name, "parts": []}
        return UploadSession(file_id=f"pending-{upload_id}", upload_id=upload_id,
                             part_urls=[f"https://upload/{upload_id}/{n}" for n in range(parts)])

    def upload_part(self, url, data):
        self.calls.append(("upload_part", url, len(data)))
        upload_id = url.split("/")[-2]
        self.uploads[upload_id]["parts"].append(data)

    def complete_upload(self, file_id, upload_id, parent_path):
        self.calls.append(("complete_upload", upload_id))
        upload = self.uploads.pop(upload_id)
        new_id = self.add(upload["parent"], upload["name"], data=b"".join(upload["parts"]))
        return self._entry(new_id, parent_path)

    def get_download_url(self, file_id):
        self.calls.append(("get_download_url", file_id))
        return f"https://download/{file_id}"

    def download_range(self, url, offset, size):
        self.calls.append(("download_range", offset, size))
        file_id = url.rsplit("/", 1)[-1]
        return self.items[file_id]["data"][offset:offset + size]

    def get_quota(self):
        return {"used": 4096 * 10, "total": 4096 * 100}

    def find(self, path):
        current = "root"
        for part in [p for p in path.split("/") if p]:
            current = next(i for i in self._children(current) if self.items[i]["name"] == part)
        return current


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def drive():
    d = FakeDrive()
    docs = d.add_dir("root", "docs")
    d.add(docs, "a.txt", data=b"hello world")
    d.add(docs, "b.txt", data=b"")
    sub = d.add_dir(docs, "sub")
    d.add(sub, "deep.bin", data=bytes(range(256)) * 4)
    d.add("root", "top.txt", data=b"top")
    return d


@pytest.fixture
def cache(clock):
    return EntryCache(capacity=100, ttl=600, clock=clock)


@pytest.fixture
def resolver(drive, cache):
    return PathResolver(drive, cache)


@pytest.fixture
def make_fs(drive, cache, resolver):
    def _make(**kwargs):
        kwargs.setdefault("read_buffer_size", 64)
        kwargs.setdefault("upload_chunk_size", 4)
        return AliyunDriveFS(drive, resolver, cache, **kwargs)
    return _make
