"""
Configuration loading and management for dirserve
"""

import os
import yaml
import logging
from pathlib import Path
from typing import Dict, Any, Iterable, List, Optional

from .errors import ConfigError
from .models import (
    Config, ServerConfig, MountConfig, ArchiveConfig, LoggingConfig,
    UiConfig, DavConfig
)
from .mounts import MountTable, default_mount_path, make_mount, normalize_prefix, parse_mount_spec

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "dirserve.yaml"
CONFIG_ENV_VAR = "DIRSERVE_CONFIG"

# URL prefixes owned by the server itself
RESERVED_PREFIXES = {"api", "healthz", "metrics", "static"}

MAX_ARCHIVE_CONCURRENCY = 64


class ConfigManager:
    """Loads and validates configuration once at startup"""

    def __init__(self, config_path: Optional[str] = None):
        config_path = config_path or os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH
        self.config_path = Path(config_path).resolve()
        self.config: Optional[Config] = None

    def load_config(self) -> Config:
        """
        Load configuration from YAML file

        A missing file yields the defaults. A file that exists but cannot be
        parsed or validated raises ConfigError.
        """
        if not self.config_path.exists():
            logger.warning(f"Configuration file not found: {self.config_path}, using defaults")
            self.config = Config()
            return self.config

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to read {self.config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Configuration root must be a mapping: {self.config_path}")

        config = parse_config(data)
        self.config = config
        logger.info(f"Configuration loaded from {self.config_path}")
        return config

    def get_config(self) -> Config:
        """Get current configuration"""
        if self.config is None:
            self.config = self.load_config()
        return self.config


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be a mapping")
    return value


def _int(value: Any, key: str, low: int, high: Optional[int] = None) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"'{key}' must be an integer, got {value!r}")
    if number < low or (high is not None and number > high):
        bound = f"{low}..{high}" if high is not None else f">= {low}"
        raise ConfigError(f"'{key}' out of range ({bound}): {number}")
    return number


def parse_config(data: Dict[str, Any]) -> Config:
    """Parse configuration data into Config object"""

    # Server configuration
    server_data = _section(data, 'server')
    server = ServerConfig(
        addr=str(server_data.get('addr', '0.0.0.0')),
        port=_int(server_data.get('port', 8000), 'server.port', 1, 65535),
        enableSecurity=bool(server_data.get('enableSecurity', False)),
        contentSecurityPolicy=str(server_data.get('contentSecurityPolicy') or ServerConfig.contentSecurityPolicy),
    )

    # Mounts
    mounts = []
    for i, mount_data in enumerate(data.get('mounts') or []):
        if not isinstance(mount_data, dict) or 'dir' not in mount_data:
            raise ConfigError(f"mounts[{i}] needs at least a 'dir' key")
        mounts.append(MountConfig(
            path=str(mount_data.get('path') or default_mount_path(str(mount_data['dir']))),
            dir=str(mount_data['dir']),
            readonly=bool(mount_data.get('readonly', True)),
            name=str(mount_data.get('name', '')),
        ))

    # Archive
    archive_data = _section(data, 'archive')
    compression = str(archive_data.get('compression', 'store')).lower()
    if compression not in ('store', 'deflate'):
        raise ConfigError(f"'archive.compression' must be 'store' or 'deflate', got {compression!r}")
    try:
        grace = float(archive_data.get('cancelGraceSeconds', 5.0))
    except (TypeError, ValueError):
        raise ConfigError("'archive.cancelGraceSeconds' must be a number")
    archive = ArchiveConfig(
        concurrency=_int(archive_data.get('concurrency', 4), 'archive.concurrency', 1, MAX_ARCHIVE_CONCURRENCY),
        maxFileSize=_int(archive_data.get('maxFileSize', 500 * 1024 * 1024), 'archive.maxFileSize', 0),
        abortOnError=bool(archive_data.get('abortOnError', False)),
        compression=compression,
        warningsName=str(archive_data.get('warningsName', 'ARCHIVE_WARNINGS.txt')),
        cancelGraceSeconds=max(0.0, grace),
    )

    # Logging
    logging_data = _section(data, 'logging')
    logging_config = LoggingConfig(
        json=bool(logging_data.get('json', False)),
        file=str(logging_data.get('file', '')),
        level=str(logging_data.get('level', 'INFO')).upper(),
        max_size_mb=_int(logging_data.get('max_size_mb', 100), 'logging.max_size_mb', 1),
        backup_count=_int(logging_data.get('backup_count', 5), 'logging.backup_count', 0),
    )

    # UI
    ui_data = _section(data, 'ui')
    ui = UiConfig(
        brand=str(ui_data.get('brand', 'dirserve')),
        title=str(ui_data.get('title', 'dirserve')),
    )

    # WebDAV
    dav_data = _section(data, 'dav')
    dav = DavConfig(
        enabled=bool(dav_data.get('enabled', True)),
        mountPath='/' + normalize_prefix(str(dav_data.get('mountPath', '/webdav'))),
    )
    if dav.mountPath == '/':
        raise ConfigError("'dav.mountPath' cannot be the site root")

    config = Config(
        server=server,
        root=str(data.get('root') or ''),
        mounts=mounts,
        showHidden=bool(data.get('showHidden', False)),
        archive=archive,
        logging=logging_config,
        ui=ui,
        dav=dav,
    )
    check_reserved(config)
    return config


def reserved_prefixes(config: Config) -> set:
    reserved = set(RESERVED_PREFIXES)
    if config.dav.enabled:
        reserved.add(normalize_prefix(config.dav.mountPath).split('/')[0])
    return reserved


def check_reserved(config: Config, extra: Iterable[MountConfig] = ()) -> None:
    """Refuse mount prefixes that would shadow the server's own routes"""
    reserved = reserved_prefixes(config)
    for mount in list(config.mounts) + list(extra):
        prefix = normalize_prefix(mount.path)
        if prefix and prefix.split('/')[0] in reserved:
            raise ConfigError(f"Mount path /{prefix} collides with a reserved route")


def mounts_from_specs(specs: Iterable[str]) -> List[MountConfig]:
    """Convert --dir "[path:]dir[:ro][:name]" specs to mount configs"""
    result = []
    for spec in specs:
        path, directory, readonly, name = parse_mount_spec(spec)
        result.append(MountConfig(path=path, dir=directory, readonly=readonly, name=name))
    return result


def build_mount_table(config: Config, extra_specs: Iterable[str] = ()) -> MountTable:
    """
    Build the immutable mount table for a configuration

    The root directory becomes the default mount. Without root and without
    any mounts the current directory is served.
    """
    extra = mounts_from_specs(extra_specs)
    check_reserved(config, extra)

    configured = list(config.mounts) + extra
    mounts = []
    root = config.root
    if not root and not configured:
        root = "."
    if root:
        mounts.append(make_mount("", root))
    for mount in configured:
        mounts.append(make_mount(mount.path, mount.dir, mount.readonly, mount.name))

    return MountTable(mounts)


def load_config(config_path: Optional[str] = None) -> Config:
    """Load configuration from file"""
    return ConfigManager(config_path).load_config()
