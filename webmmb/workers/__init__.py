"""Worker package exports."""

from webmmb.workers.reconciler import ReconcilerWorker, Sweeper

__all__ = ["ReconcilerWorker", "Sweeper"]
