"""lum: live Markdown preview in the browser.

Renders Markdown files to HTML, serves them on localhost and reloads the
page whenever a file changes on disk. One primary process serves every
tracked file; later ``lum FILE`` invocations attach to it through a
control socket.

Quick Start:
    $ lum README.md
    http://127.0.0.1:6333/?file=/home/me/project/README.md
"""

from __future__ import annotations

from lum._types import (
    AddError,
    ControlError,
    EndpointInUseError,
    LumError,
    NoInstanceError,
    ProtocolError,
    RenderOutcome,
    RenderResult,
)

__version__ = "0.1.0"

__all__ = [
    "AddError",
    "ControlError",
    "EndpointInUseError",
    "LumError",
    "NoInstanceError",
    "ProtocolError",
    "RenderOutcome",
    "RenderResult",
    "__version__",
]
