"""
Data models and constants for dirserve
"""

from enum import Enum
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field

from .mounts import Mount


class ResponseCode(Enum):
    """Standard response codes"""
    SUCCESS = 0
    ERROR = 1
    NOT_FOUND = 404
    RANGE_NOT_SATISFIABLE = 416
    INTERNAL_ERROR = 500


@dataclass
class ApiResponse:
    """Standard API response format"""
    code: int = ResponseCode.SUCCESS.value
    msg: str = "success"
    data: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "msg": self.msg,
            "data": self.data
        }


@dataclass(frozen=True)
class ResolvedPath:
    """A request path bound to a mount and a confined absolute path"""
    mount: Mount
    relative: str
    absolute: str

    @property
    def url_path(self) -> str:
        base = self.mount.url_path.rstrip('/')
        return f"{base}/{self.relative}" if self.relative else (base or '/')

    @property
    def name(self) -> str:
        if self.relative:
            return self.relative.rsplit('/', 1)[-1]
        return self.mount.name


@dataclass
class FileInfo:
    """File information structure"""
    name: str
    path: str
    size: int
    is_dir: bool
    modified: float
    mime_type: str = ""
    is_symlink: bool = False
    is_special: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "path": self.path,
            "size": self.size,
            "is_dir": self.is_dir,
            "modified": self.modified,
            "mime_type": self.mime_type
        }


@dataclass
class MountConfig:
    """One configured mount"""
    path: str
    dir: str
    readonly: bool = True
    name: str = ""


@dataclass
class ServerConfig:
    """Server configuration"""
    addr: str = "0.0.0.0"
    port: int = 8000
    enableSecurity: bool = False
    contentSecurityPolicy: str = "default-src 'self'; style-src 'self' 'unsafe-inline'"


@dataclass
class ArchiveConfig:
    """ZIP download configuration"""
    concurrency: int = 4
    maxFileSize: int = 500 * 1024 * 1024
    abortOnError: bool = False
    compression: str = "store"
    warningsName: str = "ARCHIVE_WARNINGS.txt"
    cancelGraceSeconds: float = 5.0


@dataclass
class LoggingConfig:
    """Logging configuration"""
    json: bool = False
    file: str = ""
    level: str = "INFO"
    max_size_mb: int = 100
    backup_count: int = 5


@dataclass
class UiConfig:
    """UI configuration"""
    brand: str = "dirserve"
    title: str = "dirserve"


@dataclass
class DavConfig:
    """WebDAV configuration"""
    enabled: bool = True
    mountPath: str = "/webdav"


@dataclass
class Config:
    """Main configuration container"""
    server: ServerConfig = field(default_factory=ServerConfig)
    root: str = ""
    mounts: List[MountConfig] = field(default_factory=list)
    showHidden: bool = False
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    ui: UiConfig = field(default_factory=UiConfig)
    dav: DavConfig = field(default_factory=DavConfig)


# HTTP Range parsing result
@dataclass
class HttpRange:
    """HTTP Range header parsing result"""
    start: Optional[int] = None
    end: Optional[int] = None
    suffix_length: Optional[int] = None

    def resolve(self, content_length: int) -> tuple:
        """
        Resolve range to (start, end) byte positions, inclusive

        Returns an empty range (start > end) when nothing is satisfiable.
        """
        if content_length <= 0:
            return 0, -1

        last = content_length - 1
        if self.suffix_length is not None:
            if self.suffix_length <= 0:
                return content_length, last
            return max(0, content_length - self.suffix_length), last

        start = self.start if self.start is not None else 0
        end = self.end if self.end is not None else last
        if start > last:
            return content_length, last
        return start, min(end, last)


DEFAULT_MIME_TYPE = 'application/octet-stream'
