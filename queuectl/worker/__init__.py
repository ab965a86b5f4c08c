"""
Worker module.
Contains the worker pool, command runner and daemon marker.
"""

from queuectl.worker.main import Worker, WorkerPool, run
from queuectl.worker.runner import CommandRunner

__all__ = ["Worker", "WorkerPool", "CommandRunner", "run"]
