"""
dirserve: read-only directory server with streaming ZIP downloads
Built with FastAPI + Uvicorn + aiofiles
"""

__version__ = "1.0.0"
__author__ = "dirserve"
__description__ = "Read-only directory server with mounts, WebDAV and streaming ZIP archives"
