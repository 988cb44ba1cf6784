import errno
import functools
import logging
import os
import posixpath
import stat
import tempfile
import threading
import time
from typing import Dict, List, Optional

from fuse import FUSE, FuseOSError, Operations

from aliyundrive_fuse.cache import EntryCache, normalize_path
from aliyundrive_fuse.errors import (
    ConflictError,
    DriveError,
    FatalError,
    NotADirectoryFault,
    NotFoundError,
)
from aliyundrive_fuse.fs.resolver import PathResolver
from aliyundrive_fuse.models import Entry, EntryKind

logger = logging.getLogger(__name__)

DEFAULT_READ_BUFFER_SIZE = 10 * 1024 * 1024
DEFAULT_UPLOAD_CHUNK_SIZE = 10 * 1024 * 1024
# Spooled write buffers move to disk past this size
SPOOL_MAX_SIZE = 16 * 1024 * 1024
BLOCK_SIZE = 4096

ERRNO_BY_ERROR = (
    (NotFoundError, errno.ENOENT),
    (NotADirectoryFault, errno.ENOTDIR),
    (ConflictError, errno.EEXIST),
)


def to_errno(error: DriveError) -> int:
    for error_type, code in ERRNO_BY_ERROR:
        if isinstance(error, error_type):
            return code
    return errno.EIO


def fuse_errors(func):
    """Translate DriveError raised by an operation into FuseOSError."""
    @functools.wraps(func)
    def wrapper(self, path, *args, **kwargs):
        try:
            return func(self, path, *args, **kwargs)
        except DriveError as e:
            code = to_errno(e)
            if code == errno.EIO:
                logger.error(f"{func.__name__} {path} failed: {type(e).__name__}: {e}")
            else:
                logger.debug(f"{func.__name__} {path}: {type(e).__name__}: {e}")
            raise FuseOSError(code) from e
    return wrapper


def mutating(func):
    """Reject the operation up front when mounted read-only."""
    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        if self.read_only:
            raise FuseOSError(errno.EACCES)
        return func(self, *args, **kwargs)
    return wrapper


class OpenFile:
    """State behind one file handle: read-ahead window and optional write buffer."""

    def __init__(self, path: str, entry: Optional[Entry], writable: bool):
        self.path = path
        self.entry = entry
        self.writable = writable
        self.lock = threading.Lock()
        self.download_url: Optional[str] = None
        self.window_offset = 0
        self.window = b""
        self.buffer = None
        self.dirty = False

    @property
    def size(self) -> int:
        if self.buffer is not None:
            self.buffer.seek(0, os.SEEK_END)
            return self.buffer.tell()
        return self.entry.size if self.entry else 0

    def new_buffer(self):
        self.buffer = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE)
        return self.buffer

    def close(self):
        if self.buffer is not None:
            self.buffer.close()
            self.buffer = None


class AliyunDriveFS(Operations):
    """
    FUSE operations backed by the drive API.

    Lookups go through PathResolver (and its EntryCache); every mutation
    invalidates the affected cache entries before returning.
    """

    def __init__(self, drive, resolver: PathResolver, cache: EntryCache,
                 read_only: bool = False, no_trash: bool = False,
                 read_buffer_size: int = DEFAULT_READ_BUFFER_SIZE,
                 upload_chunk_size: int = DEFAULT_UPLOAD_CHUNK_SIZE):
        self.drive = drive
        self.resolver = resolver
        self.cache = cache
        self.read_only = read_only
        self.no_trash = no_trash
        self.read_buffer_size = read_buffer_size
        self.upload_chunk_size = upload_chunk_size

        self._lock = threading.Lock()
        self._handles: Dict[int, OpenFile] = {}
        # Files with unflushed writes, by path; visible to getattr/readdir
        self._pending: Dict[str, OpenFile] = {}
        self.fd = 0

        logger.info(f"AliyunDriveFS initialized. Root: {resolver.root}, read-only: {read_only}")

    # --- Helpers ---

    def _invalidate(self, path: str, subtree: bool = False) -> None:
        remote = self.resolver.remote_path(path)
        self.cache.invalidate(remote)
        if subtree:
            self.cache.invalidate_prefix(remote)

    def _attrs(self, entry: Entry, size: Optional[int] = None) -> dict:
        now = time.time()
        if entry.is_dir:
            mode = stat.S_IFDIR | (0o555 if self.read_only else 0o755)
            nlink = 2
        else:
            mode = stat.S_IFREG | (0o444 if self.read_only else 0o644)
            nlink = 1
        mtime = entry.modified_at or now
        return {
            'st_mode': mode,
            'st_nlink': nlink,
            'st_size': entry.size if size is None else size,
            'st_uid': os.getuid(),
            'st_gid': os.getgid(),
            'st_atime': mtime,
            'st_mtime': mtime,
            'st_ctime': entry.created_at or mtime,
            'st_blocks': ((entry.size if size is None else size) + 511) // 512,
        }

    def _register(self, handle: OpenFile) -> int:
        with self._lock:
            self.fd += 1
            self._handles[self.fd] = handle
            if handle.writable:
                self._pending[handle.path] = handle
            return self.fd

    def _handle(self, fh) -> OpenFile:
        handle = self._handles.get(fh)
        if handle is None:
            raise FuseOSError(errno.EBADF)
        return handle

    def _parent_dir(self, path: str) -> Entry:
        parent = self.resolver.resolve(posixpath.dirname(path))
        if not parent.is_dir:
            raise NotADirectoryFault(f"{parent.path} is not a directory")
        return parent

    def _remove(self, entry: Entry) -> None:
        self.drive.remove(entry.id, trash=not self.no_trash)

    # --- Read path ---

    def _fetch(self, handle: OpenFile, offset: int, length: int) -> bytes:
        if handle.download_url is None:
            handle.download_url = self.drive.get_download_url(handle.entry.id)
        try:
            return self.drive.download_range(handle.download_url, offset, length)
        except FatalError as e:
            # Download URLs expire; the CDN answers 403
            if e.details.get("status_code") != 403:
                raise
            logger.debug(f"Download URL for {handle.path} expired, requesting a new one")
            handle.download_url = self.drive.get_download_url(handle.entry.id)
            return self.drive.download_range(handle.download_url, offset, length)

    def _read_remote(self, handle: OpenFile, size: int, offset: int) -> bytes:
        file_size = handle.entry.size
        if offset >= file_size:
            return b""
        end = min(offset + size, file_size)
        window_end = handle.window_offset + len(handle.window)
        if not (handle.window_offset <= offset and end <= window_end):
            length = min(max(size, self.read_buffer_size), file_size - offset)
            handle.window = self._fetch(handle, offset, length)
            handle.window_offset = offset
        start = offset - handle.window_offset
        return handle.window[start:start + (end - offset)]

    def _load_buffer(self, handle: OpenFile) -> None:
        """Pull the current remote content into the write buffer before a partial write."""
        buf = handle.new_buffer()
        if handle.entry is None or handle.entry.size == 0:
            return
        logger.info(f"Loading {handle.path} ({handle.entry.size} bytes) for modification")
        offset = 0
        while offset < handle.entry.size:
            length = min(self.read_buffer_size, handle.entry.size - offset)
            chunk = self._fetch(handle, offset, length)
            if not chunk:
                break
            buf.write(chunk)
            offset += len(chunk)

    # --- Write path ---

    def _upload(self, handle: OpenFile) -> None:
        parent = self._parent_dir(handle.path)
        name = posixpath.basename(handle.path)
        parent_path = parent.path

        old = handle.entry
        if old is None:
            old = self.resolver.lookup_child(parent, name)
        size = handle.size
        mode = "refuse" if old is None else "ignore"

        session = self.drive.create_upload(parent.id, name, size, self.upload_chunk_size, mode)
        handle.buffer.seek(0)
        for url in session.part_urls:
            self.drive.upload_part(url, handle.buffer.read(self.upload_chunk_size))
        entry = self.drive.complete_upload(session.file_id, session.upload_id, parent_path)

        if old is not None and old.id != entry.id:
            self._remove(old)
        self._invalidate(handle.path)

        handle.entry = entry
        handle.dirty = False
        handle.download_url = None
        handle.window = b""
        logger.info(f"Uploaded {handle.path} ({size} bytes)")

    # --- FUSE Operations ---

    @fuse_errors
    def getattr(self, path, fh=None):
        path = normalize_path(path)
        handle = self._pending.get(path)
        if handle is not None:
            with handle.lock:
                size = handle.size
            entry = handle.entry or Entry(id="", name=posixpath.basename(path), kind=EntryKind.FILE,
                                          modified_at=time.time())
            return self._attrs(entry, size=size)
        return self._attrs(self.resolver.resolve(path))

    @fuse_errors
    def readdir(self, path, fh):
        path = normalize_path(path)
        names: List[str] = ['.', '..']
        seen = set()
        for entry in self.resolver.list_dir(path):
            if entry.name and entry.name not in seen:
                seen.add(entry.name)
                names.append(entry.name)
        with self._lock:
            pending = list(self._pending)
        for pending_path in pending:
            name = posixpath.basename(pending_path)
            if posixpath.dirname(pending_path) == path and name not in seen:
                seen.add(name)
                names.append(name)
        return names

    @fuse_errors
    def open(self, path, flags):
        path = normalize_path(path)
        writable = (flags & os.O_ACCMODE) != os.O_RDONLY
        if writable and self.read_only:
            raise FuseOSError(errno.EACCES)

        entry = self.resolver.resolve(path)
        if entry.is_dir:
            raise FuseOSError(errno.EISDIR)

        handle = OpenFile(path, entry, writable)
        if writable and flags & os.O_TRUNC:
            handle.new_buffer()
            handle.dirty = True
        return self._register(handle)

    @fuse_errors
    @mutating
    def create(self, path, mode, fi=None):
        path = normalize_path(path)
        parent = self._parent_dir(path)
        name = posixpath.basename(path)
        if self.resolver.lookup_child(parent, name) is not None:
            raise FuseOSError(errno.EEXIST)

        handle = OpenFile(path, None, writable=True)
        handle.new_buffer()
        handle.dirty = True
        logger.debug(f"create: {path} buffered until flush")
        return self._register(handle)

    @fuse_errors
    def read(self, path, size, offset, fh):
        handle = self._handle(fh)
        with handle.lock:
            if handle.buffer is not None:
                handle.buffer.seek(offset)
                return handle.buffer.read(size)
            return self._read_remote(handle, size, offset)

    @fuse_errors
    @mutating
    def write(self, path, data, offset, fh):
        handle = self._handle(fh)
        if not handle.writable:
            raise FuseOSError(errno.EBADF)
        with handle.lock:
            if handle.buffer is None:
                self._load_buffer(handle)
            handle.buffer.seek(offset)
            handle.buffer.write(data)
            handle.dirty = True
        return len(data)

    @fuse_errors
    @mutating
    def truncate(self, path, length, fh=None):
        path = normalize_path(path)
        handle = self._handles.get(fh) if fh else self._pending.get(path)
        if handle is not None and not handle.writable:
            raise FuseOSError(errno.EBADF)
        temporary = handle is None
        if temporary:
            handle = OpenFile(path, self.resolver.resolve(path), writable=True)
            if handle.entry.is_dir:
                raise FuseOSError(errno.EISDIR)

        with handle.lock:
            if handle.buffer is None:
                if length == 0:
                    handle.new_buffer()
                else:
                    self._load_buffer(handle)
            current = handle.size
            if length < current:
                handle.buffer.truncate(length)
            elif length > current:
                handle.buffer.seek(current)
                handle.buffer.write(b"\0" * (length - current))
            handle.dirty = True
            if temporary:
                try:
                    self._upload(handle)
                finally:
                    handle.close()

    @fuse_errors
    def flush(self, path, fh):
        handle = self._handles.get(fh)
        if handle is None or not handle.dirty:
            return 0
        with handle.lock:
            if handle.dirty:
                self._upload(handle)
        return 0

    def fsync(self, path, datasync, fh):
        return self.flush(path, fh)

    @fuse_errors
    def release(self, path, fh):
        with self._lock:
            handle = self._handles.get(fh)
        if handle is None:
            return 0
        try:
            if handle.dirty:
                with handle.lock:
                    self._upload(handle)
        finally:
            with self._lock:
                self._handles.pop(fh, None)
                if self._pending.get(handle.path) is handle:
                    del self._pending[handle.path]
            handle.close()
        return 0

    @fuse_errors
    @mutating
    def unlink(self, path):
        path = normalize_path(path)
        entry = self.resolver.resolve(path)
        if entry.is_dir:
            raise FuseOSError(errno.EISDIR)
        self._remove(entry)
        self._invalidate(path)

    @fuse_errors
    @mutating
    def rmdir(self, path):
        path = normalize_path(path)
        if path == "/":
            raise FuseOSError(errno.EBUSY)
        entry = self.resolver.resolve(path)
        if not entry.is_dir:
            raise FuseOSError(errno.ENOTDIR)
        if self.resolver.list_dir(path):
            raise FuseOSError(errno.ENOTEMPTY)
        self._remove(entry)
        self._invalidate(path, subtree=True)

    @fuse_errors
    @mutating
    def mkdir(self, path, mode):
        path = normalize_path(path)
        parent = self._parent_dir(path)
        name = posixpath.basename(path)
        if self.resolver.lookup_child(parent, name) is not None:
            raise FuseOSError(errno.EEXIST)
        self.drive.create_folder(parent.id, name, parent.path)
        self._invalidate(path)

    @fuse_errors
    @mutating
    def rename(self, old, new):
        old = normalize_path(old)
        new = normalize_path(new)
        if old == new:
            return
        if old == "/" or new.startswith(old + "/"):
            raise FuseOSError(errno.EINVAL)

        source = self.resolver.resolve(old)
        new_parent = self._parent_dir(new)
        new_name = posixpath.basename(new)

        # The remote side refuses name clashes; the existing target is left untouched
        if self.resolver.lookup_child(new_parent, new_name) is not None:
            raise ConflictError(f"{new} already exists")

        if posixpath.dirname(old) == posixpath.dirname(new):
            self.drive.rename(source.id, new_name)
        else:
            renamed = new_name if new_name != source.name else None
            self.drive.move(source.id, new_parent.id, renamed)

        self._invalidate(old, subtree=source.is_dir)
        self._invalidate(new, subtree=source.is_dir)

    @fuse_errors
    def statfs(self, path):
        quota = self.drive.get_quota()
        total = quota["total"] // BLOCK_SIZE
        free = max(quota["total"] - quota["used"], 0) // BLOCK_SIZE
        return {
            'f_bsize': BLOCK_SIZE,
            'f_frsize': BLOCK_SIZE,
            'f_blocks': total,
            'f_bfree': free,
            'f_bavail': free,
            'f_namemax': 1024,
        }

    # Remote objects carry no ownership or permission bits
    def chmod(self, path, mode):
        return 0

    def chown(self, path, uid, gid):
        return 0

    def destroy(self, path):
        logger.info("Unmounting; dropping cached listings")
        self.cache.clear()


def mount_daemon(fs: AliyunDriveFS, mount_point: str, allow_other: bool = False):
    if not os.path.exists(mount_point):
        os.makedirs(mount_point)
    logger.info(f"Mounting drive at {mount_point}")
    FUSE(fs, mount_point, foreground=True, nothreads=False, allow_other=allow_other)
