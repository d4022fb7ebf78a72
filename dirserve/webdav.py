"""
Read-only WebDAV access to dirserve mounts using WsgiDAV

One provider serves the whole mount table. Every lookup goes through the
same path guard as the browser and API routes, and the provider refuses all
methods that would modify a mount.
"""

import logging
import os
import stat as stat_module
from typing import Dict, Any, List, Optional

from wsgidav import util
from wsgidav.dav_provider import DAVCollection, DAVProvider
from wsgidav.fs_dav_provider import FileResource, FolderResource
from wsgidav.wsgidav_app import WsgiDAVApp

from .errors import PathTraversalError
from .metrics import metrics_manager
from .models import Config
from .mounts import MountTable
from .pathguard import is_hidden, safe_path, split_segments

logger = logging.getLogger(__name__)


class MountFolderResource(FolderResource):
    """A mounted directory; members are looked up through the provider"""

    def get_member_names(self) -> List[str]:
        names = []
        for name in os.listdir(self._file_path):
            if self.provider.show_hidden or not is_hidden(name):
                names.append(name)
        for name in self.provider.child_mounts(self.path):
            if name not in names:
                names.append(name)
        # WsgiDAV expects every listed name to resolve
        return [name for name in names if self.get_member(name) is not None]

    def get_member(self, name: str):
        return self.provider.resource_at(util.join_uri(self.path, name), self.environ, report=False)


class MountIndexCollection(DAVCollection):
    """Virtual directory holding mount prefixes that have no directory behind them"""

    def get_member_names(self) -> List[str]:
        return self.provider.child_mounts(self.path)

    def get_member(self, name: str):
        return self.provider.resource_at(util.join_uri(self.path, name), self.environ, report=False)

    def get_display_info(self) -> Dict[str, Any]:
        return {"type": "Mount index"}


class MountTableProvider(DAVProvider):
    """Read-only DAV provider over every mount in a MountTable"""

    def __init__(self, mounts: MountTable, show_hidden: bool = False):
        super().__init__()
        self.readonly = True
        self.mounts = mounts
        self.show_hidden = show_hidden
        self.fs_opts = {}

    def __repr__(self):
        return f"{self.__class__.__name__}({len(self.mounts)} mounts)"

    def is_readonly(self) -> bool:
        return True

    def child_mounts(self, path: str) -> List[str]:
        """Next path segment of every mount prefix below path"""
        segments = split_segments(path)
        depth = len(segments)
        names = []
        for mount in self.mounts.top_level():
            parts = mount.prefix.split('/')
            if len(parts) > depth and parts[:depth] == segments and parts[depth] not in names:
                names.append(parts[depth])
        return names

    def _loc_to_file_path(self, path: str, report: bool = True) -> Optional[str]:
        mount, remainder = self.mounts.match(path)
        if mount is None:
            return None
        try:
            return safe_path(mount.root, remainder)
        except PathTraversalError:
            if report:
                metrics_manager.increment_traversal_rejections()
                logger.warning(f"WebDAV path traversal rejected on mount {mount.name!r}")
            return None

    def resource_at(self, path: str, environ: Dict[str, Any], report: bool = True):
        file_path = self._loc_to_file_path(path, report)
        st = None
        if file_path is not None:
            try:
                st = os.stat(file_path)
            except OSError:
                st = None

        if st is None:
            if self.child_mounts(path):
                return MountIndexCollection(path, environ)
            return None
        if stat_module.S_ISDIR(st.st_mode):
            return MountFolderResource(path, environ, file_path)
        if stat_module.S_ISREG(st.st_mode):
            return FileResource(path, environ, file_path)
        # FIFOs, sockets and devices are never served
        return None

    def get_resource_inst(self, path: str, environ: Dict[str, Any]):
        return self.resource_at(path, environ)


def refuse(start_response, status: str, body: bytes):
    start_response(status, [
        ("Content-Type", "text/plain; charset=utf-8"),
        ("Content-Length", str(len(body))),
    ])
    return [body]


def create_webdav_app(mounts: MountTable, config: Config):
    """Create WebDAV WSGI application"""
    provider = MountTableProvider(mounts, config.showHidden)

    webdav_config = {
        "provider_mapping": {"/": provider},
        "mount_path": config.dav.mountPath,
        "http_authenticator": {
            "domain_controller": None,
            "accept_basic": True,
            "accept_digest": False,
            "default_to_digest": False,
        },
        # Anonymous read access to every share
        "simple_dc": {"user_mapping": {"*": True}},
        "verbose": 1,
        # Log through dirserve's own handlers
        "logging": {"enable": False},
        "dir_browser": {"enable": True},
        "property_manager": None,
        "lock_storage": None,
        "middleware_stack": [
            "wsgidav.error_printer.ErrorPrinter",
            "wsgidav.http_authenticator.HTTPAuthenticator",
            "wsgidav.dir_browser.WsgiDavDirBrowser",
            "wsgidav.request_resolver.RequestResolver",
        ],
    }

    app = WsgiDAVApp(webdav_config)

    # Wrap to count requests and keep PROPFIND to one level
    def webdav_wrapper(environ, start_response):
        metrics_manager.increment_webdav_requests()

        if environ.get("REQUEST_METHOD") == "PROPFIND":
            depth = environ.setdefault("HTTP_DEPTH", "1").strip().lower()
            if depth not in ("0", "1"):
                return refuse(start_response, "403 Forbidden", b"Depth: infinity is not supported\n")

        try:
            return app(environ, start_response)
        except Exception as e:
            metrics_manager.increment_errors()
            logger.error(f"WebDAV error: {type(e).__name__}")
            raise

    logger.info(f"WebDAV app created for {len(mounts)} mounts at {config.dav.mountPath}")
    return webdav_wrapper
