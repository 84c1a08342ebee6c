"""Tests for root-confined path resolution."""
import pytest

from filegate.uploads.errors import UnsafePathError
from filegate.uploads.paths import owner_directory, resolve_path


def test_resolves_inside_root(tmp_path):
    assert resolve_path(tmp_path, "alice", "abc.png") == tmp_path / "alice" / "abc.png"


def test_inner_dot_segments_that_stay_inside_are_allowed(tmp_path):
    assert resolve_path(tmp_path, "alice", "x/../abc.png") == tmp_path / "alice" / "abc.png"


@pytest.mark.parametrize(
    "segments",
    [
        ("..",),
        ("..", "etc"),
        ("alice", "../../etc/passwd"),
        ("../alice", "x"),
        ("alice", "..", "..", "x"),
        ("/etc", "passwd"),
        ("alice", "/etc/passwd"),
        ("alice", "a\x00b"),
        ("", "x"),
        (".",),
        ("alice", ".."),
    ],
)
def test_rejects_paths_leaving_or_equal_to_root(tmp_path, segments):
    with pytest.raises(UnsafePathError):
        resolve_path(tmp_path, *segments)


def test_sibling_directory_with_common_prefix_is_rejected(tmp_path):
    root = tmp_path / "uploads"
    with pytest.raises(UnsafePathError):
        resolve_path(root, "../uploads-private/x")


def test_owner_directory(tmp_path):
    assert owner_directory(tmp_path, "alice") == tmp_path / "alice"


@pytest.mark.parametrize("identity", ["..", ".", "", "a/b", "a\\b", "/root"])
def test_owner_directory_rejects_unsafe_identities(tmp_path, identity):
    with pytest.raises(UnsafePathError):
        owner_directory(tmp_path, identity)
