"""
Background Jobs Module

Handles scheduled tasks for:
- Inventory ledger reconciliation
"""

from supplychain.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler
from supplychain.jobs.reconciliation_jobs import reconcile_inventory_ledger

__all__ = [
    "scheduler",
    "start_scheduler",
    "shutdown_scheduler",
    "reconcile_inventory_ledger",
]
