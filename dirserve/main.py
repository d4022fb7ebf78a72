"""
Main application factory for dirserve
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Iterable, Optional

import uvicorn
from asgiref.wsgi import WsgiToAsgi
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __description__, __version__
from .archive import ArchiveStreamer
from .config import build_mount_table, load_config
from .errors import ConfigError
from .fs import VirtualFS
from .models import Config
from .middleware import setup_middleware
from .ui import setup_ui_routes
from .api import setup_api_routes
from .metrics import metrics_manager


logger = logging.getLogger(__name__)


def setup_logging(config: Config):
    """Setup logging configuration"""
    log_config = config.logging

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_config.level.upper(), logging.INFO))

    # Clear existing handlers
    root_logger.handlers.clear()

    # Create formatter
    if log_config.json:
        formatter = logging.Formatter(
            '{"time":"%(asctime)s","level":"%(levelname)s","logger":"%(name)s","msg":"%(message)s"}'
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # File handler if configured
    if log_config.file:
        log_file = Path(log_config.file)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=log_config.max_size_mb * 1024 * 1024,
            backupCount=log_config.backup_count,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def setup_webdav(app: FastAPI, config: Config, mounts):
    """Mount the WsgiDAV application when enabled and installed"""
    if not config.dav.enabled:
        logger.info("WebDAV disabled")
        return

    try:
        from .webdav import create_webdav_app
    except ImportError as e:
        logger.warning(f"WebDAV dependencies not available ({e}); install dirserve[webdav]. WebDAV disabled")
        return

    webdav_app = create_webdav_app(mounts, config)
    app.mount(config.dav.mountPath, WsgiToAsgi(webdav_app))
    logger.info(f"WebDAV mounted at {config.dav.mountPath}")


def create_app(
    config_path: Optional[str] = None,
    config: Optional[Config] = None,
    mount_specs: Iterable[str] = (),
    configure_logging: bool = True,
) -> FastAPI:
    """
    Create FastAPI application

    Args:
        config_path: YAML file to load; DIRSERVE_CONFIG or dirserve.yaml when omitted
        config: Ready-made configuration, used instead of loading a file
        mount_specs: Extra "[path:]dir[:ro][:name]" mounts from the command line
        configure_logging: Install the configured log handlers

    Raises:
        ConfigError: If the configuration or a mount is invalid
    """
    if config is None:
        config = load_config(config_path)

    if configure_logging:
        setup_logging(config)

    mounts = build_mount_table(config, mount_specs)
    vfs = VirtualFS(mounts)

    app = FastAPI(
        title=config.ui.title,
        description=__description__,
        version=__version__,
        docs_url=None,
        redoc_url=None,
    )

    # Immutable for the lifetime of the app
    app.state.config = config
    app.state.mounts = mounts
    app.state.vfs = vfs
    app.state.streamer = ArchiveStreamer(vfs)
    app.state.metrics = metrics_manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "HEAD", "OPTIONS"],
        allow_headers=["*"],
    )

    setup_middleware(app, config.server)

    # Health check endpoint
    @app.get("/healthz")
    async def health_check():
        return {"ok": True, "version": __version__}

    # Metrics endpoint
    @app.get("/metrics")
    async def get_metrics():
        return metrics_manager.get_metrics()

    setup_api_routes(app)
    setup_webdav(app, config, mounts)
    # Catch-all browsing routes go last
    setup_ui_routes(app)

    logger.info(f"dirserve {__version__} configured with {len(mounts)} mounts")
    logger.info(
        f"Archives: concurrency={config.archive.concurrency}, "
        f"compression={config.archive.compression}, maxFileSize={config.archive.maxFileSize}"
    )

    return app


def main(argv=None):
    """Main entry point for running the server"""
    import argparse

    parser = argparse.ArgumentParser(description="dirserve directory server")
    parser.add_argument("--config", "-c", default=None, help="Configuration file path")
    parser.add_argument(
        "--dir", "-d", action="append", default=[], metavar="SPEC",
        help='Mount a directory, "[path:]dir[:ro][:name]"; may be repeated',
    )
    parser.add_argument("--host", default=None, help="Host to bind to")
    parser.add_argument("--port", type=int, default=None, help="Port to bind to")
    parser.add_argument("--show-hidden", action="store_true", help="List hidden files")

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
        if args.show_hidden:
            config.showHidden = True
        app = create_app(config=config, mount_specs=args.dir)
    except ConfigError as e:
        print(f"dirserve: {e}", file=sys.stderr)
        return 2

    # Override with command line args
    host = args.host or config.server.addr
    port = args.port or config.server.port
    logger.info(f"dirserve starting on {host}:{port}")

    uvicorn.run(
        app,
        host=host,
        port=port,
        access_log=False,  # We handle access logging ourselves
        server_header=False,
        log_config=None,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
