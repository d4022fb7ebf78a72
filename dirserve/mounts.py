"""
Mount table for dirserve

A mount binds a URL prefix to a backing directory. The table is built once at
startup and never changes while the server is running.
"""

import logging
import os
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from .errors import ConfigError
from .pathguard import split_segments

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Mount:
    """A named binding from a URL prefix to a directory"""
    name: str
    prefix: str
    root: str
    readonly: bool = True

    @property
    def url_path(self) -> str:
        return '/' + self.prefix if self.prefix else '/'

    @property
    def is_default(self) -> bool:
        return self.prefix == ''

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": self.url_path,
            "readonly": self.readonly,
        }


def normalize_prefix(path: str) -> str:
    """Normalize a mount URL path to 'a/b' form ('' for the root mount)"""
    parts = split_segments(path or '')
    if '..' in parts:
        raise ConfigError(f"Mount path may not contain '..': {path}")
    return '/'.join(parts)


def make_mount(path: str, directory: str, readonly: bool = True, name: str = "") -> Mount:
    """
    Build a mount, canonicalizing and validating its directory

    Raises:
        ConfigError: If the directory is missing or not a directory
    """
    prefix = normalize_prefix(path)
    root = os.path.realpath(os.path.abspath(os.path.expanduser(directory)))

    if not os.path.exists(root):
        raise ConfigError(f"Mount directory does not exist: {directory}")
    if not os.path.isdir(root):
        raise ConfigError(f"Mount path is not a directory: {directory}")

    if not name:
        name = prefix.rsplit('/', 1)[-1] if prefix else (os.path.basename(root) or root)

    return Mount(name=name, prefix=prefix, root=root, readonly=bool(readonly))


def default_mount_path(directory: str) -> str:
    """URL path used when a mount names only its directory"""
    return '/' + os.path.basename(os.path.normpath(directory))


def parse_mount_spec(spec: str) -> Tuple[str, str, bool, str]:
    """
    Parse a command line mount spec of the form [path:]dir[:ro][:name]

    Returns:
        (path, directory, readonly, name) tuple
    """
    if not spec or not spec.strip():
        raise ConfigError("Empty mount spec")
    parts = spec.split(':')

    flags = ('ro', 'rw')
    if len(parts) >= 2 and parts[0].startswith('/') and parts[1] and parts[1] not in flags:
        path, directory, rest = parts[0], parts[1], parts[2:]
    else:
        directory, rest = parts[0], parts[1:]
        path = default_mount_path(directory)

    if not directory:
        raise ConfigError(f"Mount spec has no directory: {spec}")

    readonly = True
    name = ""
    for item in rest:
        if item == 'ro':
            readonly = True
        elif item == 'rw':
            readonly = False
        elif item:
            name = item

    return path, directory, readonly, name


class MountTable:
    """Ordered, immutable set of mounts with longest-prefix resolution"""

    def __init__(self, mounts: Iterable[Mount]):
        ordered = tuple(mounts)

        names = set()
        prefixes = set()
        default = None
        for mount in ordered:
            # The default mount is never looked up by name
            if not mount.is_default:
                if mount.name in names:
                    raise ConfigError(f"Duplicate mount name: {mount.name}")
                names.add(mount.name)
            if mount.prefix in prefixes:
                raise ConfigError(f"Duplicate mount path: {mount.url_path}")
            prefixes.add(mount.prefix)
            if mount.is_default:
                default = mount

        self._mounts = ordered
        self._default = default
        # Longest prefix first so /a/b wins over /a
        self._by_length = tuple(sorted(
            (m for m in ordered if not m.is_default),
            key=lambda m: len(m.prefix.split('/')),
            reverse=True,
        ))

        for mount in ordered:
            logger.info(
                f"Directory mounted: {mount.url_path} -> {mount.root} "
                f"(name={mount.name}, readonly={mount.readonly})"
            )

    @property
    def mounts(self) -> Tuple[Mount, ...]:
        return self._mounts

    @property
    def default(self) -> Optional[Mount]:
        return self._default

    def __iter__(self):
        return iter(self._mounts)

    def __len__(self) -> int:
        return len(self._mounts)

    def get(self, name: str) -> Optional[Mount]:
        for mount in self._by_length:
            if mount.name == name:
                return mount
        if self._default is not None and self._default.name == name:
            return self._default
        return None

    def match(self, url_path: str) -> Tuple[Optional[Mount], str]:
        """
        Split a URL path into (mount, remainder)

        Only whole segments match, so /docsx never selects the /docs mount.
        When nothing matches, the default mount receives the full path.
        """
        raw_segments = split_segments(url_path)

        for mount in self._by_length:
            mount_segments = mount.prefix.split('/')
            count = len(mount_segments)
            if raw_segments[:count] == mount_segments:
                return mount, '/'.join(raw_segments[count:])

        return self._default, '/'.join(raw_segments)

    def top_level(self) -> List[Mount]:
        """Mounts shown on the index page when there is no default mount"""
        return [m for m in self._mounts if not m.is_default]
