"""
Ledger reconciliation job.

Checks that every inventory counter equals the sum of its movements and
logs each pair that drifted. Nothing is corrected automatically.
"""
import logging
from typing import List

from supplychain.database import get_db_session
from supplychain.services.inventory_ledger import InventoryLedger, LedgerDiscrepancy

logger = logging.getLogger(__name__)


async def reconcile_inventory_ledger() -> List[LedgerDiscrepancy]:
    async with get_db_session() as db:
        discrepancies = await InventoryLedger(db).reconcile()

    if not discrepancies:
        logger.info("Inventory ledger reconciled: no discrepancies")
        return []

    for d in discrepancies:
        logger.error(
            f"Ledger drift for product {d.product_id} at warehouse {d.warehouse_id}: "
            f"quantity {d.quantity}, movements sum to {d.movement_total} ({d.drift:+d})"
        )
    return discrepancies
