"""
Utility functions for dirserve
"""

import hashlib
import mimetypes
import time
from datetime import datetime
from typing import Optional
from urllib.parse import quote
import logging

from .models import HttpRange, DEFAULT_MIME_TYPE

logger = logging.getLogger(__name__)


def get_mime_type(name: str) -> str:
    """Get MIME type for a file name"""
    mime_type, _ = mimetypes.guess_type(name)
    return mime_type or DEFAULT_MIME_TYPE


def format_file_size(size_bytes: int) -> str:
    """Format file size in human readable format"""
    if size_bytes == 0:
        return "0 B"

    size_names = ["B", "KB", "MB", "GB", "TB", "PB"]
    i = 0
    size = float(size_bytes)

    while size >= 1024.0 and i < len(size_names) - 1:
        size /= 1024.0
        i += 1

    if i == 0:
        return f"{int(size)} {size_names[i]}"
    return f"{size:.1f} {size_names[i]}"


def format_timestamp(timestamp: float, format_str: str = "%Y-%m-%d %H:%M:%S") -> str:
    """Format timestamp to readable string"""
    try:
        return datetime.fromtimestamp(timestamp).strftime(format_str)
    except (ValueError, OSError, OverflowError):
        return "Unknown"


def parse_http_range(range_header: str) -> Optional[HttpRange]:
    """
    Parse HTTP Range header

    Supports:
    - bytes=start-end
    - bytes=start-
    - bytes=-suffix

    Only the first range of a multi-range request is honoured.

    Returns:
        HttpRange object or None if invalid
    """
    if not range_header or not range_header.startswith("bytes="):
        return None

    range_spec = range_header[6:].split(',')[0].strip()
    if '-' not in range_spec:
        return None

    start_str, end_str = (part.strip() for part in range_spec.split('-', 1))

    try:
        if not start_str:
            return HttpRange(suffix_length=int(end_str))
        if not end_str:
            return HttpRange(start=int(start_str))
        return HttpRange(start=int(start_str), end=int(end_str))
    except ValueError:
        return None


def generate_etag(size: int, modified: float) -> str:
    """Generate ETag from size and mtime"""
    data = f"{modified}:{size}"
    return hashlib.md5(data.encode()).hexdigest()


def content_disposition(filename: str, disposition: str = "attachment") -> str:
    """Build a Content-Disposition value with an ASCII fallback"""
    fallback = "".join(
        ch if 32 <= ord(ch) < 127 and ch not in {'"', '\\'} else "_"
        for ch in filename
    ) or "download"
    return f"{disposition}; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


def create_content_range_header(start: int, end: int, total: int) -> str:
    """Create Content-Range header value"""
    return f"bytes {start}-{end}/{total}"


def create_response_headers(
    content_length: Optional[int] = None,
    content_type: str = "application/octet-stream",
    etag: Optional[str] = None,
    last_modified: Optional[float] = None,
    cache_control: str = "no-cache"
) -> dict:
    """Create standard response headers"""
    headers = {
        "Content-Type": content_type,
        "Cache-Control": cache_control,
        "X-Content-Type-Options": "nosniff",
    }

    if content_length is not None:
        headers["Content-Length"] = str(content_length)

    if etag:
        headers["ETag"] = f'"{etag}"'

    if last_modified:
        headers["Last-Modified"] = http_date(last_modified)

    return headers


def http_date(timestamp: float) -> str:
    """RFC 7231 date"""
    return time.strftime("%a, %d %b %Y %H:%M:%S GMT", time.gmtime(timestamp))


def format_duration(seconds: float) -> str:
    """Format duration in seconds to human readable string"""
    if seconds < 1:
        return f"{seconds*1000:.1f}ms"
    elif seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m{secs}s"
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    return f"{hours}h{minutes}m"
