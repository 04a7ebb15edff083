"""
Unit tests for resource paths.
"""

import pytest

from firestore_lite.errors import InvalidPathError
from firestore_lite.path import EMPTY_PATH, ResourcePath, collection_path, document_path


def test_parse_and_shape():
    doc = ResourcePath.parse("users/alice")
    assert doc.segments == ("users", "alice")
    assert doc.is_document and not doc.is_collection
    assert doc.id == "alice"
    assert doc.parent() == ResourcePath.parse("users")
    assert ResourcePath.parse("users").is_collection


def test_leading_and_trailing_slashes_ignored():
    assert ResourcePath.parse("/users/alice/") == ResourcePath.parse("users/alice")


@pytest.mark.parametrize("bad", ["", "users//alice"])
def test_parse_rejects_invalid(bad):
    with pytest.raises(InvalidPathError):
        ResourcePath.parse(bad)


def test_resource_name_roundtrip():
    path = ResourcePath.parse("users/alice/posts/p1")
    name = path.to_name("proj", "(default)")
    assert name == "projects/proj/databases/(default)/documents/users/alice/posts/p1"
    assert ResourcePath.from_name(name) == path
    assert EMPTY_PATH.to_name("proj") == "projects/proj/databases/(default)/documents"


def test_from_name_rejects_non_document_names():
    with pytest.raises(InvalidPathError):
        ResourcePath.from_name("users/alice")
    with pytest.raises(InvalidPathError):
        ResourcePath.from_name("projects/p/databases/d/indexes/x")


def test_document_and_collection_helpers():
    assert document_path("a/b").is_document
    assert collection_path("a/b/c").is_collection
    with pytest.raises(InvalidPathError, match="even number"):
        document_path("a")
    with pytest.raises(InvalidPathError, match="odd number"):
        collection_path("a/b")


def test_ordering_and_prefix():
    a = ResourcePath.parse("a/b")
    assert a.is_prefix_of(ResourcePath.parse("a/b/c/d"))
    assert not a.is_prefix_of(ResourcePath.parse("a/c"))
    assert sorted([ResourcePath.parse("b"), a]) == [a, ResourcePath.parse("b")]
    assert len({ResourcePath.parse("a/b"), a}) == 1
