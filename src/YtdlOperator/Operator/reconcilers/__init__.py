"""Reconcilers for every managed kind."""

from __future__ import annotations

from .base import BaseReconciler
from .child_process import ChildProcessReconciler
from .download import DownloadReconciler
from .executor import ExecutorReconciler
from .storage import StorageReconciler

__all__ = [
    "BaseReconciler",
    "ChildProcessReconciler",
    "DownloadReconciler",
    "ExecutorReconciler",
    "StorageReconciler",
]
