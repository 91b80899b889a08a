# sync_affiliates.py
# Usage: python sync_affiliates.py
#
# Approves commissions on orders that are already paid, rewrites legacy
# order statuses and resyncs every affiliate's balance and total earnings.
from app import create_app
from affiliate.ledger import CommissionLedger
from orders.order_service import OrderService


def sync_affiliates():
    app = create_app()
    with app.app_context():
        approved = CommissionLedger.approve_paid_commissions()
        print(f"Approved {approved} commission(s) on paid orders")

        migrated = OrderService.migrate_legacy_statuses()
        print(f"Rewrote {migrated} legacy order status value(s)")

        synced = CommissionLedger.recalculate_all_balances()
        print(f"Resynced balances for {synced} affiliate(s)")


if __name__ == "__main__":
    sync_affiliates()
