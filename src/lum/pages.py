"""HTML page assembly for the file view and the index view.

Pages are self-contained: the stylesheet and the live-reload script from
``static/`` are inlined so a page never needs a second request before it
can subscribe to its event stream.
"""

from __future__ import annotations

import logging
from html import escape
from pathlib import Path
from urllib.parse import quote

logger = logging.getLogger(__name__)

_STATIC_DIR = Path(__file__).parent / "static"


def _load_static(filename: str) -> str:
    """Load a static asset, returning an empty string if not found."""
    path = _STATIC_DIR / filename
    try:
        return path.read_text(encoding="utf-8")
    except OSError:
        logger.warning("Static asset missing: %s", path)
        return ""


def render_file_page(path: str, content: bytes) -> str:
    """Wrap rendered Markdown in the full file page."""
    title = Path(path).name
    css = _load_static("style.css")
    js = _load_static("script.js")
    body = content.decode("utf-8", errors="replace")
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>{escape(title)}</title>
<style>
{css}
</style>
</head>
<body data-file="{escape(path)}" data-events="/events?file={quote(path)}">
<article class="markdown-body">
{body}
</article>
<script>
{js}
</script>
</body>
</html>"""


def render_index_page(paths: list[str]) -> str:
    """Render the list of tracked files."""
    css = _load_static("style.css")
    js = _load_static("script.js")

    if paths:
        items = "\n".join(
            f'<li><a href="/?file={quote(p)}">{escape(Path(p).name)}</a>'
            f' <span class="file-path">{escape(p)}</span></li>'
            for p in paths
        )
        listing = f'<ul class="file-list">\n{items}\n</ul>'
    else:
        listing = '<p class="empty-state">No files are being tracked.</p>'

    return f"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>lum</title>
<style>
{css}
</style>
</head>
<body data-events="/events/index">
<article class="markdown-body">
<h1>Tracked files</h1>
{listing}
</article>
<script>
{js}
</script>
</body>
</html>"""
