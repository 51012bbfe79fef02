"""
Git Gateway worker - drains pending webhook events and compensations.

Usage:
    python -m git_gateway.worker
"""

from .loop import WorkerLoop, run_worker

__all__ = ["WorkerLoop", "run_worker"]
