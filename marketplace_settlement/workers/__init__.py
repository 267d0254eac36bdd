"""Background workers: deferred command retries and scheduled reconciliation."""
from .deferred_worker import run_deferred_pass, start_deferred_worker
from .reconciliation_worker import run_reconciliation_pass, start_reconciliation_worker

__all__ = [
    "run_deferred_pass",
    "run_reconciliation_pass",
    "start_deferred_worker",
    "start_reconciliation_worker",
]
