"""Worker-side code that runs inside masked pods: query and download modes."""

from __future__ import annotations

from .download import run_download
from .query import run_query

__all__ = ["run_download", "run_query"]
