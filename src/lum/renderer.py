"""Markdown-to-HTML renderer adapter.

Reads a Markdown file from disk and converts it to HTML bytes with
Python-Markdown. Enabled extensions: tables, fenced code with Pygments
highlighting, automatic heading ids, and GitHub-style alerts
(``> [!NOTE]`` blockquotes).

I/O problems never raise: ``render_file`` returns a RenderResult whose
outcome tells the caller whether the failure is worth retrying.
"""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as etree
from pathlib import Path

import markdown
from markdown.extensions import Extension
from markdown.treeprocessors import Treeprocessor

from lum._types import RenderOutcome, RenderResult

logger = logging.getLogger(__name__)

_HIGHLIGHT_STYLE = "friendly"

_ALERT_RE = re.compile(r"^\s*\[!(?P<kind>[A-Za-z]+)\][ \t]*\n?")

_SVG_ATTRS = (
    'xmlns="http://www.w3.org/2000/svg" width="16" height="16" viewBox="0 0 24 24" '
    'fill="none" stroke="currentColor" stroke-width="2" stroke-linecap="round" '
    'stroke-linejoin="round"'
)

ALERT_ICONS: dict[str, str] = {
    "note": (
        f"<svg {_SVG_ATTRS}><circle cx=\"12\" cy=\"12\" r=\"10\"/>"
        '<path d="M12 16v-4"/><path d="M12 8h.01"/></svg>'
    ),
    "tip": (
        f"<svg {_SVG_ATTRS}><path d=\"M15 14c.2-1 .7-1.7 1.5-2.5 1-.9 1.5-2.2 1.5-3.5"
        'A6 6 0 0 0 6 8c0 1 .2 2.2 1.5 3.5.7.7 1.3 1.5 1.5 2.5"/>'
        '<path d="M9 18h6"/><path d="M10 22h4"/></svg>'
    ),
    "important": (
        f"<svg {_SVG_ATTRS}><path d=\"M22 17a2 2 0 0 1-2 2H6.828a2 2 0 0 0-1.414.586"
        "l-2.202 2.202A.71.71 0 0 1 2 21.286V5a2 2 0 0 1 2-2h16a2 2 0 0 1 2 2z\"/>"
        '<path d="M12 15h.01"/><path d="M12 7v4"/></svg>'
    ),
    "warning": (
        f"<svg {_SVG_ATTRS}><path d=\"m21.73 18-8-14a2 2 0 0 0-3.48 0l-8 14"
        'A2 2 0 0 0 4 21h16a2 2 0 0 0 1.73-3"/>'
        '<path d="M12 9v4"/><path d="M12 17h.01"/></svg>'
    ),
    "caution": (
        f"<svg {_SVG_ATTRS}><path d=\"M12 16h.01\"/><path d=\"M12 8v4\"/>"
        '<path d="M15.312 2a2 2 0 0 1 1.414.586l4.688 4.688A2 2 0 0 1 22 8.688'
        "v6.624a2 2 0 0 1-.586 1.414l-4.688 4.688a2 2 0 0 1-1.414.586H8.688"
        "a2 2 0 0 1-1.414-.586l-4.688-4.688A2 2 0 0 1 2 15.312V8.688"
        'a2 2 0 0 1 .586-1.414l4.688-4.688A2 2 0 0 1 8.688 2z"/></svg>'
    ),
}


# ---------------------------------------------------------------------------
# GitHub alerts
# ---------------------------------------------------------------------------


class AlertTreeprocessor(Treeprocessor):
    """Turn ``> [!TYPE]`` blockquotes into styled alert blocks.

    Runs after inline processing so the first paragraph's text is final.
    """

    def run(self, root: etree.Element) -> None:
        for blockquote in root.iter("blockquote"):
            self._transform(blockquote)

    def _transform(self, blockquote: etree.Element) -> None:
        if len(blockquote) == 0:
            return
        first = blockquote[0]
        if first.tag != "p" or not first.text:
            return
        match = _ALERT_RE.match(first.text)
        if match is None:
            return
        kind = match.group("kind").lower()
        if kind not in ALERT_ICONS:
            return

        blockquote.set("class", f"markdown-alert markdown-alert-{kind}")

        title = etree.Element("p")
        title.set("class", "markdown-alert-title")
        icon = self.md.htmlStash.store(ALERT_ICONS[kind])
        title.text = icon + kind.capitalize()
        blockquote.insert(0, title)

        first.text = first.text[match.end():]
        if not first.text.strip() and len(first) == 0:
            blockquote.remove(first)


class AlertExtension(Extension):
    def extendMarkdown(self, md: markdown.Markdown) -> None:  # noqa: N802
        # Priority below the inline processor (20).
        md.treeprocessors.register(AlertTreeprocessor(md), "github_alerts", 15)


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


def _new_converter() -> markdown.Markdown:
    return markdown.Markdown(
        extensions=[
            "tables",
            "fenced_code",
            "sane_lists",
            "toc",
            "codehilite",
            AlertExtension(),
        ],
        extension_configs={
            "codehilite": {
                "noclasses": True,
                "pygments_style": _HIGHLIGHT_STYLE,
                "guess_lang": False,
            },
        },
        output_format="html",
    )


def render_markdown(text: str) -> str:
    """Convert Markdown text to an HTML fragment.

    A fresh converter is built per call; ``markdown.Markdown`` instances
    keep per-document state and are not safe to share across threads.
    """
    return _new_converter().convert(text)


def render_file(path: Path | str) -> RenderResult:
    """Read and render one Markdown file.

    Returns:
        RenderResult with outcome OK and the HTML bytes, MISSING when the
        file does not exist (e.g. mid atomic save), or FAILED for any
        other read or conversion error.
    """
    try:
        raw = Path(path).read_bytes()
    except FileNotFoundError:
        return RenderResult(RenderOutcome.MISSING, error=f"file does not exist: {path}")
    except OSError as e:
        return RenderResult(RenderOutcome.FAILED, error=f"failed to read file: {e}")

    try:
        html = render_markdown(raw.decode("utf-8", errors="replace"))
    except Exception as e:
        logger.exception("Markdown conversion failed for %s", path)
        return RenderResult(RenderOutcome.FAILED, error=f"failed to convert markdown: {e}")

    return RenderResult(RenderOutcome.OK, html=html.encode("utf-8"))
