"""
API routes for dirserve
"""

import logging
from typing import Optional

from fastapi import APIRouter, Request, HTTPException
from fastapi.responses import Response, StreamingResponse

from .archive import ArchiveJob, stream_archive
from .errors import (
    EntryNotFoundError,
    FileSystemError,
    ForbiddenError,
    IsDirectoryError,
    NotDirectoryError,
    NotRegularFileError,
    PathTraversalError,
    RangeNotSatisfiable,
)
from .metrics import archive_context, download_context, metrics_manager
from .models import ApiResponse, ResponseCode
from .utils import (
    content_disposition,
    create_content_range_header,
    create_response_headers,
    generate_etag,
    parse_http_range,
)

logger = logging.getLogger(__name__)

# API router
api_router = APIRouter(prefix="/api", tags=["api"])

NO_CACHE = "no-cache, no-store, must-revalidate"


def fs_http_exception(exc: FileSystemError, headers: Optional[dict] = None) -> HTTPException:
    """
    Convert a FileSystemError into a HTTPException

    Traversal, forbidden and missing entries are indistinguishable to the
    client so probing reveals nothing about what exists outside a mount.
    """
    if isinstance(exc, PathTraversalError):
        metrics_manager.increment_traversal_rejections()

    if isinstance(exc, (PathTraversalError, ForbiddenError, EntryNotFoundError)):
        status_code, code, msg = 404, ResponseCode.NOT_FOUND.value, "Not found"
    elif isinstance(exc, NotDirectoryError):
        status_code, code, msg = 400, ResponseCode.ERROR.value, "Not a directory"
    elif isinstance(exc, IsDirectoryError):
        status_code, code, msg = 400, ResponseCode.ERROR.value, "Is a directory"
    elif isinstance(exc, RangeNotSatisfiable):
        status_code, code, msg = 416, ResponseCode.RANGE_NOT_SATISFIABLE.value, "Range not satisfiable"
    else:
        logger.error(f"Filesystem error: {type(exc).__name__}")
        status_code, code, msg = 500, ResponseCode.INTERNAL_ERROR.value, "Filesystem error"

    return HTTPException(
        status_code=status_code,
        detail=ApiResponse(code=code, msg=msg, data=None).to_dict(),
        headers=headers,
    )


def _etag_matches(header: Optional[str], etag: str) -> bool:
    if not header:
        return False
    if header.strip() == "*":
        return True
    return any(tag.strip().removeprefix("W/") == f'"{etag}"' for tag in header.split(','))


async def file_response(request: Request, url_path: str, attachment: bool = False) -> Response:
    """
    Serve one file with Range, ETag and Last-Modified support

    Raises:
        HTTPException: Mapped from the underlying FileSystemError
    """
    vfs = request.app.state.vfs
    try:
        info = await vfs.stat(url_path)
        if info.is_dir:
            raise IsDirectoryError("Path is a directory")
        if info.is_special:
            raise NotRegularFileError("Not a regular file")

        etag = generate_etag(info.size, info.modified)
        if _etag_matches(request.headers.get("if-none-match"), etag):
            return Response(status_code=304, headers={"ETag": f'"{etag}"'})

        range_header = request.headers.get("range")
        http_range = parse_http_range(range_header) if range_header else None
        if_range = request.headers.get("if-range")
        if http_range and if_range and not _etag_matches(if_range, etag):
            http_range = None

        if request.method == "HEAD":
            generator = None
            if http_range:
                start, end = http_range.resolve(info.size)
                if start > end:
                    raise RangeNotSatisfiable("Invalid range")
            else:
                start, end = 0, info.size - 1
        else:
            generator, start, end, info = await vfs.open_for_download(url_path, http_range)

    except RangeNotSatisfiable as e:
        raise fs_http_exception(e, headers={"Content-Range": f"bytes */{info.size}"})
    except FileSystemError as e:
        raise fs_http_exception(e)

    headers = create_response_headers(
        content_length=max(0, end - start + 1),
        content_type=info.mime_type,
        etag=etag,
        last_modified=info.modified,
    )
    headers["Accept-Ranges"] = "bytes"
    headers["Content-Disposition"] = content_disposition(info.name, "attachment" if attachment else "inline")

    status_code = 200
    if http_range:
        headers["Content-Range"] = create_content_range_header(start, end, info.size)
        status_code = 206

    if generator is None:
        return Response(status_code=status_code, headers=headers)

    # Wrap generator to count bytes
    async def counted_generator():
        with download_context() as counter:
            async for chunk in generator:
                counter.add_bytes(len(chunk))
                yield chunk

    return StreamingResponse(
        counted_generator(),
        status_code=status_code,
        headers=headers,
        media_type=info.mime_type,
    )


async def archive_response(request: Request, url_path: str) -> Response:
    """
    Stream a directory as a ZIP archive

    The tree is enumerated before the response starts, so a path that
    escapes its mount yields a 404 and no archive bytes at all.
    """
    state = request.app.state
    config = state.config
    try:
        info = await state.vfs.stat(url_path)
        if not info.is_dir:
            raise NotDirectoryError("Not a directory")
        root = await state.vfs.resolve(url_path)
        job = ArchiveJob.from_config(root, config.archive, config.showHidden)
        plan = await state.streamer.plan(job)
    except FileSystemError as e:
        raise fs_http_exception(e)

    def on_result(result):
        metrics_manager.record_archive(result.entries_written, len(result.skipped))

    async def archive_generator():
        with archive_context() as counter:
            async for chunk in stream_archive(
                state.streamer,
                job,
                plan,
                grace_seconds=config.archive.cancelGraceSeconds,
                on_result=on_result,
            ):
                counter.add_bytes(len(chunk))
                yield chunk

    headers = {
        "Content-Disposition": content_disposition(job.filename),
        "Cache-Control": NO_CACHE,
        "X-Content-Type-Options": "nosniff",
    }
    return StreamingResponse(archive_generator(), media_type="application/zip", headers=headers)


@api_router.get("/mounts")
async def list_mounts(request: Request):
    """List configured mounts"""
    mounts = request.app.state.mounts
    return ApiResponse(
        code=ResponseCode.SUCCESS.value,
        msg="success",
        data={"mounts": [m.to_dict() for m in mounts]},
    ).to_dict()


@api_router.get("/list")
async def list_files(request: Request, path: str = "/"):
    """List directory contents"""
    state = request.app.state
    try:
        files = await state.vfs.read_dir(path, state.config.showHidden)
    except FileSystemError as e:
        raise fs_http_exception(e)

    return ApiResponse(
        code=ResponseCode.SUCCESS.value,
        msg="success",
        data={
            "path": path,
            "files": [f.to_dict() for f in files],
        }
    ).to_dict()


@api_router.get("/stat")
async def stat_file(request: Request, path: str):
    """Get metadata of one entry"""
    try:
        info = await request.app.state.vfs.stat(path)
    except FileSystemError as e:
        raise fs_http_exception(e)

    return ApiResponse(
        code=ResponseCode.SUCCESS.value,
        msg="success",
        data=info.to_dict(),
    ).to_dict()


@api_router.api_route("/download", methods=["GET", "HEAD"])
async def download_file(request: Request, path: str):
    """Download file with range support"""
    return await file_response(request, path, attachment=True)


@api_router.get("/archive")
async def download_archive(request: Request, path: str = "/"):
    """Download a directory as a streamed ZIP archive"""
    return await archive_response(request, path)


def setup_api_routes(app):
    """Setup API routes"""
    app.include_router(api_router)
    logger.info("API routes setup complete")
