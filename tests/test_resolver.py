import pytest

from aliyundrive_fuse.errors import NotADirectoryFault, NotFoundError
from aliyundrive_fuse.fs.resolver import PathResolver


def test_resolve_root(resolver, drive):
    root = resolver.resolve("/")
    assert root.id == "root"
    assert root.is_dir
    assert drive.calls == []


def test_resolve_nested_file(resolver):
    entry = resolver.resolve("/docs/sub/deep.bin")
    assert entry.name == "deep.bin"
    assert entry.size == 1024
    assert entry.path == "/docs/sub/deep.bin"
    assert not entry.is_dir


def test_listing_is_fetched_once_per_directory(resolver, drive):
    resolver.resolve("/docs/a.txt")
    resolver.resolve("/docs/b.txt")
    resolver.resolve("/docs")
    assert drive.count("list_children") == 2  # "/" and "/docs"


def test_listing_refetched_after_ttl(resolver, drive, clock):
    resolver.resolve("/top.txt")
    clock.advance(601)
    resolver.resolve("/top.txt")
    assert drive.count("list_children") == 2


def test_missing_component(resolver):
    with pytest.raises(NotFoundError):
        resolver.resolve("/docs/nope/a.txt")


def test_file_used_as_directory(resolver):
    with pytest.raises(NotADirectoryFault):
        resolver.resolve("/top.txt/child")


def test_list_dir(resolver):
    names = [e.name for e in resolver.list_dir("/docs")]
    assert names == ["a.txt", "b.txt", "sub"]


def test_list_dir_on_file(resolver):
    with pytest.raises(NotADirectoryFault):
        resolver.list_dir("/top.txt")


def test_duplicate_names_first_wins(resolver, drive):
    docs = drive.find("/docs")
    drive.add(docs, "dup.txt", data=b"first")
    drive.add(docs, "dup.txt", data=b"second copy")
    assert resolver.resolve("/docs/dup.txt").size == len(b"first")


def test_configured_root(drive, cache):
    resolver = PathResolver(drive, cache, root="/docs")
    assert resolver.remote_path("/sub") == "/docs/sub"
    assert resolver.resolve("/").name == "docs"
    assert resolver.resolve("/sub/deep.bin").path == "/docs/sub/deep.bin"
    with pytest.raises(NotFoundError):
        resolver.resolve("/top.txt")


def test_cache_keys_are_remote_paths(resolver, cache):
    resolver.resolve("/docs/sub/deep.bin")
    assert cache.get("/") is not None
    assert cache.get("/docs") is not None
    assert cache.get("/docs/sub") is not None
