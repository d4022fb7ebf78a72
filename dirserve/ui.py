"""
UI routes and template rendering for dirserve
"""

import logging
from pathlib import Path
from urllib.parse import quote
from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from .api import archive_response, file_response, fs_http_exception
from .errors import FileSystemError
from .utils import format_file_size, format_timestamp

logger = logging.getLogger(__name__)

# UI router
ui_router = APIRouter(tags=["ui"])

# Templates ship inside the package
templates_dir = Path(__file__).parent / "templates"
templates = Jinja2Templates(directory=str(templates_dir))


def breadcrumbs(url_path: str) -> list:
    """[(label, href), ...] from the site root down to url_path"""
    href = ""
    crumbs = [("/", "/")]
    for segment in [s for s in url_path.split('/') if s]:
        href += "/" + quote(segment)
        crumbs.append((segment, href + "/"))
    return crumbs


@ui_router.api_route("/{path:path}", methods=["GET", "HEAD"], response_class=HTMLResponse)
async def browse(request: Request, path: str = ""):
    """
    Browse mounted directories

    Directories render a listing, files are served inline (or as an
    attachment with ?download=1) and ?download=zip streams a directory as a
    ZIP archive.
    """
    state = request.app.state
    config = state.config
    url_path = "/" + path.strip('/')
    download = request.query_params.get("download", "")

    if url_path == "/" and state.mounts.default is None and download != "zip":
        return templates.TemplateResponse(request, "index.html", {
            "title": config.ui.title,
            "brand": config.ui.brand,
            "mounts": state.mounts.top_level(),
        })

    if download == "zip":
        return await archive_response(request, url_path)

    try:
        info = await state.vfs.stat(url_path)
    except FileSystemError as e:
        raise fs_http_exception(e)

    if not info.is_dir:
        return await file_response(request, url_path, attachment=download == "1")

    return await listing_response(request, url_path)


async def listing_response(request: Request, url_path: str):
    """Render a directory listing"""
    state = request.app.state
    config = state.config

    # Relative links in a listing need the trailing slash
    if not request.url.path.endswith('/'):
        return RedirectResponse(quote(request.url.path) + '/', status_code=301)

    try:
        entries = await state.vfs.read_dir(url_path, config.showHidden)
    except FileSystemError as e:
        raise fs_http_exception(e)

    extra_mounts = state.mounts.top_level() if url_path == "/" else []

    return templates.TemplateResponse(request, "listing.html", {
        "title": config.ui.title,
        "brand": config.ui.brand,
        "path": url_path,
        "crumbs": breadcrumbs(url_path),
        "entries": entries,
        "mounts": extra_mounts,
    })


def setup_ui_routes(app):
    """Setup UI routes; must run last since it catches every path"""
    app.include_router(ui_router)
    logger.info("UI routes setup complete")


# Template filters and functions
def setup_template_filters():
    """Setup custom template filters"""
    templates.env.filters["filesize"] = format_file_size
    templates.env.filters["timestamp"] = format_timestamp
    templates.env.filters["urlquote"] = lambda value: quote(value, safe='')


# Initialize template filters
setup_template_filters()
