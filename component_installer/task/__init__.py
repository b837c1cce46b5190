"""Task tracking and work queue module for the installer.

This module provides the task tracking service used to own every long running
coroutine, the coalescing work queue, and the worker pool that drives a
reconciler from it.
"""

from .context import task_service_context, get_task_service
from .queue import ExponentialBackoff, WorkQueue, backoff_delay
from .service import TaskService
from .worker import Controller, Reconciler, ReconcileResult

__all__ = [
    "get_task_service",
    "task_service_context",
    "TaskService",
    "ExponentialBackoff",
    "WorkQueue",
    "backoff_delay",
    "Controller",
    "Reconciler",
    "ReconcileResult",
]
