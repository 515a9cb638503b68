# Overview: Threaded concurrency tests against a file-backed database (stock races, numbering races).

"""
Concurrency tests for the order core.

Every worker runs in its own app context, so it gets its own session and
database connection, the way concurrent requests would.
"""
import os
import tempfile
import threading
import unittest

from eventpos import create_app
from eventpos.extensions import db
from eventpos.models import Order, Organization, Payment, Product, SalesContext, StockMovement
from eventpos.models.inventory import MOVEMENT_INITIAL, MOVEMENT_SALE
from eventpos.models.tenancy import SALES_CONTEXT_ACTIVE
from eventpos.permissions import ALL_CAPABILITIES
from eventpos.services import ingestion_service, order_service, payment_service, stock_ledger
from eventpos.services.capability_service import Actor
from eventpos.services.concurrency import begin_write, run_with_retry
from eventpos.services.errors import InsufficientStockError, ValidationError


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"timeout": 30}},
            "RETRY_ATTEMPTS": 10,
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            org = Organization(name="Race Festival", code="RACE", timezone="UTC", is_active=True)
            db.session.add(org)
            db.session.commit()
            self.org_id = org.id

            context = SalesContext(organization_id=org.id, name="Arena", status=SALES_CONTEXT_ACTIVE)
            db.session.add(context)
            db.session.commit()
            self.context_id = context.id

            scarce = Product(
                sales_context_id=context.id, name="Last Ticket", price_cents=2500,
                tax_rate_bps=1900, track_inventory=True, stock_quantity=0,
            )
            plenty = Product(
                sales_context_id=context.id, name="Lemonade", price_cents=300,
                tax_rate_bps=700, track_inventory=True, stock_quantity=0,
            )
            db.session.add_all([scarce, plenty])
            db.session.flush()
            stock_ledger.adjust(scarce.id, 1, reason="Opening stock", movement_type=MOVEMENT_INITIAL)
            stock_ledger.adjust(plenty.id, 100, reason="Opening stock", movement_type=MOVEMENT_INITIAL)
            db.session.commit()
            self.scarce_id = scarce.id
            self.plenty_id = plenty.id

        self.actor = Actor(organization_id=self.org_id, user_id=1, capabilities=frozenset({ALL_CAPABILITIES}))

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _run_parallel(self, target, count):
        results = []
        lock = threading.Lock()
        barrier = threading.Barrier(count)

        def worker():
            with self.app.app_context():
                try:
                    barrier.wait()
                    outcome = target()
                    with lock:
                        results.append(outcome)
                except Exception as exc:
                    with lock:
                        results.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker) for _ in range(count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results

    def test_last_unit_reserved_exactly_once(self):
        """Two reservations race for a single unit: one wins, one is told there is no stock."""
        def reserve_one():
            def _op():
                begin_write()
                stock_ledger.reserve(self.scarce_id, 1, reason="race")
                db.session.commit()
                return "reserved"
            return run_with_retry(_op)

        results = self._run_parallel(reserve_one, 2)

        self.assertEqual(results.count("reserved"), 1)
        failures = [r for r in results if r != "reserved"]
        self.assertEqual(len(failures), 1)
        self.assertIsInstance(failures[0], InsufficientStockError)

        with self.app.app_context():
            self.assertEqual(db.session.get(Product, self.scarce_id).stock_quantity, 0)
            self.assertEqual(
                db.session.query(StockMovement).filter_by(
                    product_id=self.scarce_id, movement_type=MOVEMENT_SALE
                ).count(),
                1,
            )

    def test_competing_orders_never_oversell(self):
        def buy():
            order = ingestion_service.submit_counter_order(
                self.actor,
                {"sales_context_id": self.context_id, "items": [{"product_id": self.scarce_id, "quantity": 1}]},
            )
            return order.id

        results = self._run_parallel(buy, 4)

        created = [r for r in results if isinstance(r, int)]
        self.assertEqual(len(created), 1)
        self.assertTrue(all(isinstance(r, InsufficientStockError) for r in results if not isinstance(r, int)))
        with self.app.app_context():
            self.assertEqual(db.session.get(Product, self.scarce_id).stock_quantity, 0)
            self.assertEqual(db.session.query(Order).count(), 1)

    def test_order_numbers_are_unique(self):
        def buy():
            order = ingestion_service.submit_counter_order(
                self.actor,
                {"sales_context_id": self.context_id, "items": [{"product_id": self.plenty_id, "quantity": 1}]},
            )
            return order.order_number, order.daily_number

        results = self._run_parallel(buy, 8)

        errors = [r for r in results if isinstance(r, Exception)]
        self.assertFalse(errors)
        numbers = [r[0] for r in results]
        daily = sorted(r[1] for r in results)
        self.assertEqual(len(numbers), len(set(numbers)))
        self.assertEqual(daily, list(range(1, 9)))

        with self.app.app_context():
            self.assertEqual(db.session.get(Product, self.plenty_id).stock_quantity, 92)
            self.assertTrue(stock_ledger.verify_product_ledger(self.plenty_id)["consistent"])

    def test_parallel_edits_keep_ledger_consistent(self):
        with self.app.app_context():
            order = ingestion_service.submit_counter_order(
                self.actor,
                {"sales_context_id": self.context_id, "items": [{"product_id": self.plenty_id, "quantity": 1}]},
            )
            order_id = order.id

        def add_two():
            order_service.add_item(self.actor, order_id, self.plenty_id, 2)
            return "added"

        results = self._run_parallel(add_two, 5)

        self.assertEqual(results.count("added"), 5)
        with self.app.app_context():
            order = db.session.get(Order, order_id)
            self.assertEqual(len(order.items), 6)
            self.assertEqual(order.subtotal_cents, 11 * 300)
            self.assertEqual(db.session.get(Product, self.plenty_id).stock_quantity, 89)
            self.assertTrue(stock_ledger.verify_product_ledger(self.plenty_id)["consistent"])

    def _open_order(self, quantity):
        with self.app.app_context():
            order = ingestion_service.submit_counter_order(
                self.actor,
                {"sales_context_id": self.context_id, "items": [{"product_id": self.plenty_id, "quantity": quantity}]},
            )
            return order.id, order.total_cents

    def test_two_payments_for_the_balance_settle_once(self):
        order_id, total = self._open_order(2)

        def pay_balance():
            return payment_service.create_payment(self.actor, order_id, total, "cash").id

        results = self._run_parallel(pay_balance, 2)

        paid = [r for r in results if isinstance(r, int)]
        self.assertEqual(len(paid), 1)
        self.assertTrue(all(isinstance(r, ValidationError) for r in results if not isinstance(r, int)))
        with self.app.app_context():
            order = db.session.get(Order, order_id)
            self.assertEqual(order.paid_amount_cents, total)
            self.assertLessEqual(order.paid_amount_cents, order.total_cents)
            self.assertEqual(order.status, "completed")
            self.assertEqual(db.session.query(Payment).filter_by(order_id=order_id).count(), 1)

    def test_payment_racing_cancellation(self):
        order_id, total = self._open_order(3)

        def pay():
            payment_service.create_payment(self.actor, order_id, total, "card")
            return "paid"

        def cancel():
            order_service.cancel_order(self.actor, order_id, reason="Customer left")
            return "cancelled"

        barrier = threading.Barrier(2)
        results = {}

        def worker(name, target):
            with self.app.app_context():
                try:
                    barrier.wait()
                    results[name] = target()
                except Exception as exc:
                    results[name] = exc
                finally:
                    db.session.remove()

        threads = [
            threading.Thread(target=worker, args=("pay", pay)),
            threading.Thread(target=worker, args=("cancel", cancel)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        with self.app.app_context():
            order = db.session.get(Order, order_id)
            payments = db.session.query(Payment).filter_by(order_id=order_id).count()
            stock = db.session.get(Product, self.plenty_id).stock_quantity

            if results["pay"] == "paid":
                self.assertIsInstance(results["cancel"], ValidationError)
                self.assertEqual(order.status, "completed")
                self.assertIsNone(order.cancelled_at)
                self.assertEqual(payments, 1)
                self.assertEqual(stock, 97)
            else:
                self.assertEqual(results["cancel"], "cancelled")
                self.assertIsInstance(results["pay"], ValidationError)
                self.assertEqual(order.status, "cancelled")
                self.assertEqual(order.paid_amount_cents, 0)
                self.assertEqual(payments, 0)
                self.assertEqual(stock, 100)
            self.assertTrue(stock_ledger.verify_product_ledger(self.plenty_id)["consistent"])


if __name__ == "__main__":
    unittest.main()
