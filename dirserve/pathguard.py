"""
Path validation for dirserve

Every request path is checked here before it touches the filesystem.
"""

import os
from urllib.parse import unquote

from .errors import PathTraversalError

# Names hidden alongside dotfiles when the visibility policy hides entries
SYSTEM_FILES = frozenset({
    "thumbs.db",
    "desktop.ini",
    ".ds_store",
    "$recycle.bin",
})

# Upper bound on nested percent-decoding (%252e -> %2e -> .)
_MAX_DECODE_ROUNDS = 4


def split_segments(path: str) -> list:
    """Split a request path on both separator styles, dropping empty and '.' parts"""
    return [part for part in path.replace('\\', '/').split('/') if part not in ('', '.')]


def _decoded_forms(user_path: str):
    """Yield the path and each successive percent-decoding of it"""
    current = user_path
    yield current
    for _ in range(_MAX_DECODE_ROUNDS):
        decoded = unquote(current)
        if decoded == current:
            return
        current = decoded
        yield current


def check_user_path(user_path: str) -> None:
    """
    Reject raw or percent-encoded traversal before any cleaning happens

    Raises:
        PathTraversalError: On NUL bytes or any '..' segment
    """
    for form in _decoded_forms(user_path):
        if '\x00' in form:
            raise PathTraversalError("Path contains NUL byte")
        if '..' in split_segments(form):
            raise PathTraversalError("Path traversal detected")


def is_within(root: str, candidate: str) -> bool:
    """True when candidate equals root or is a descendant of it"""
    if candidate == root:
        return True
    prefix = root if root.endswith(os.sep) else root + os.sep
    return candidate.startswith(prefix)


def safe_path(root: str, user_path: str) -> str:
    """
    Safely join root path with a user supplied relative path

    Args:
        root: Canonical (symlink-free) absolute root directory
        user_path: Path relative to root, as received from the client

    Returns:
        Lexically cleaned absolute path within root

    Raises:
        PathTraversalError: If the path would escape root, lexically or
            through a symlink
    """
    check_user_path(user_path)

    parts = split_segments(user_path)
    joined = os.path.normpath(os.path.join(root, *parts)) if parts else root

    if not is_within(root, joined):
        raise PathTraversalError("Path escapes mount root")

    # A symlink inside the tree may still point elsewhere
    real = os.path.realpath(joined)
    if not is_within(root, real):
        raise PathTraversalError("Symlink points outside mount root")

    return joined


def is_hidden(name: str) -> bool:
    """Check if an entry is hidden (dotfile or well-known system file)"""
    if not name:
        return False
    return name.startswith('.') or name.lower() in SYSTEM_FILES
