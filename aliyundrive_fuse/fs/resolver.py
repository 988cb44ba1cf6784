import logging
import posixpath
from typing import List, Optional

from aliyundrive_fuse.cache import EntryCache, normalize_path
from aliyundrive_fuse.errors import NotADirectoryFault, NotFoundError
from aliyundrive_fuse.models import Entry

logger = logging.getLogger(__name__)


class PathResolver:
    """
    Maps filesystem paths to remote entries by walking cached directory listings.

    Listings are cached per directory because the API returns all children of
    a folder in one call; one fetch serves lookups for every sibling.
    Paths passed in are relative to the configured root; cache keys are the
    full remote paths.
    """

    def __init__(self, drive, cache: EntryCache, root: str = "/"):
        self.drive = drive
        self.cache = cache
        self.root = normalize_path(root)

    def remote_path(self, path: str) -> str:
        return normalize_path(posixpath.join(self.root, path.lstrip("/")))

    def resolve(self, path: str) -> Entry:
        full_path = self.remote_path(path)
        current = Entry.root()
        for part in [p for p in full_path.split("/") if p]:
            if not current.is_dir:
                raise NotADirectoryFault(f"{current.path} is not a directory")
            child = self.lookup_child(current, part)
            if child is None:
                raise NotFoundError(f"{posixpath.join(current.path, part)} not found")
            current = child
        return current

    def list_dir(self, path: str) -> List[Entry]:
        entry = self.resolve(path)
        if not entry.is_dir:
            raise NotADirectoryFault(f"{entry.path} is not a directory")
        return self._listing(entry)

    def lookup_child(self, directory: Entry, name: str) -> Optional[Entry]:
        # First occurrence in API order wins when a listing has duplicate names
        for child in self._listing(directory):
            if child.name == name:
                return child
        return None

    def _listing(self, directory: Entry) -> List[Entry]:
        key = directory.path
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Listing cache HIT for {key}")
            return cached.value
        logger.debug(f"Listing cache MISS for {key}")
        generation = self.cache.generation
        children = self.drive.list_children(directory.id, key)
        self.cache.put(key, children, generation=generation)
        return children
