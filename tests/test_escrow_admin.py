from __future__ import annotations

import os
import time
import unittest
from unittest.mock import patch

from marketcore import create_app
from marketcore.extensions import db
from marketcore.models import AdminAction, EscrowTransaction, Order, User, UserWallet, WalletTransaction
from marketcore.services.escrow_service import (
    escrow_stats,
    hold_escrow,
    list_escrow_transactions,
    refund_escrow,
    release_escrow,
)
from marketcore.utils.jwt_utils import create_token


class EscrowAdminTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev_env = {k: os.getenv(k) for k in ("SQLALCHEMY_DATABASE_URI", "EMAIL_PROVIDER")}
        os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
        os.environ["EMAIL_PROVIDER"] = "mock"
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        cls.client = cls.app.test_client()
        with cls.app.app_context():
            db.create_all()
            stamp = time.time_ns()
            buyer = User(name="Buyer", email=f"escrow-buyer-{stamp}@marketcore.test", role="buyer")
            seller = User(name="Seller", email=f"escrow-seller-{stamp}@marketcore.test", role="seller")
            admin = User(name="Admin", email=f"escrow-admin-{stamp}@marketcore.test", role="admin")
            for u in (buyer, seller, admin):
                u.set_password("Passw0rd!")
            db.session.add_all([buyer, seller, admin])
            db.session.commit()
            cls.buyer_id = int(buyer.id)
            cls.seller_id = int(seller.id)
            cls.admin_id = int(admin.id)

    @classmethod
    def tearDownClass(cls):
        for key, value in cls._prev_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def _auth(self, user_id: int) -> dict:
        return {"Authorization": f"Bearer {create_token(user_id)}"}

    def _held_escrow(self, amount: float = 100.0) -> int:
        order = Order(
            order_number=f"ORD-ESC-{time.time_ns()}",
            buyer_id=self.buyer_id,
            seller_id=self.seller_id,
            total_amount=amount,
            seller_payout=amount,
            final_buyer_price=round(amount * 1.27, 2),
            status="delivered",
            payment_status="paid",
        )
        db.session.add(order)
        db.session.flush()
        escrow = hold_escrow(order)
        db.session.commit()
        return int(escrow.id)

    def _balance(self, user_id: int) -> float:
        wallet = UserWallet.query.filter_by(user_id=user_id).first()
        return float(wallet.balance) if wallet else 0.0

    def test_hold_is_idempotent_per_order(self):
        with self.app.app_context():
            escrow_id = self._held_escrow(40.0)
            escrow = db.session.get(EscrowTransaction, escrow_id)
            order = db.session.get(Order, escrow.order_id)
            again = hold_escrow(order)
            db.session.commit()
            self.assertEqual(int(again.id), escrow_id)
            self.assertEqual(EscrowTransaction.query.filter_by(order_id=order.id).count(), 1)

    def test_release_credits_seller_and_audits(self):
        with self.app.app_context():
            escrow_id = self._held_escrow(100.0)
            before = self._balance(self.seller_id)
            result = release_escrow(escrow_id, admin_id=self.admin_id, reason="buyer confirmed")
            self.assertTrue(result["ok"], result)
            self.assertEqual(result["status"], "released")
            self.assertEqual(result["transaction_id"], escrow_id)
            self.assertEqual(result["amount"], 100.0)
            self.assertAlmostEqual(self._balance(self.seller_id) - before, 100.0, places=2)

            escrow = db.session.get(EscrowTransaction, escrow_id)
            self.assertEqual(escrow.status, "released")
            self.assertEqual(escrow.released_by, self.admin_id)
            self.assertIsNotNone(escrow.released_at)
            txn = WalletTransaction.query.filter_by(idempotency_key=f"escrow_release:{escrow_id}").one()
            self.assertEqual(txn.user_id, self.seller_id)
            self.assertEqual(txn.kind, "escrow_release")
            action = AdminAction.query.filter_by(action_type="escrow_release", target_id=escrow_id).one()
            self.assertEqual(action.details()["beneficiary_user_id"], self.seller_id)

    def test_refund_credits_buyer(self):
        with self.app.app_context():
            escrow_id = self._held_escrow(55.5)
            seller_before = self._balance(self.seller_id)
            buyer_before = self._balance(self.buyer_id)
            result = refund_escrow(escrow_id, admin_id=self.admin_id, reason="never arrived")
            self.assertTrue(result["ok"], result)
            # Only the held seller payout comes back; the platform keeps margin and delivery fee.
            escrow = db.session.get(EscrowTransaction, escrow_id)
            paid = float(db.session.get(Order, escrow.order_id).final_buyer_price)
            self.assertGreater(paid, 55.5)
            self.assertEqual(result["amount"], 55.5)
            self.assertAlmostEqual(self._balance(self.buyer_id) - buyer_before, 55.5, places=2)
            txn = WalletTransaction.query.filter_by(idempotency_key=f"escrow_refund:{escrow_id}").one()
            self.assertEqual(txn.user_id, self.buyer_id)
            self.assertAlmostEqual(float(txn.amount), 55.5, places=2)
            action = AdminAction.query.filter_by(action_type="escrow_refund", target_id=escrow_id).one()
            self.assertEqual(action.details()["amount"], 55.5)
            self.assertAlmostEqual(self._balance(self.seller_id), seller_before, places=2)
            self.assertEqual(db.session.get(EscrowTransaction, escrow_id).status, "refunded")

    def test_settled_escrow_cannot_move_again(self):
        with self.app.app_context():
            escrow_id = self._held_escrow(30.0)
            self.assertTrue(release_escrow(escrow_id, admin_id=self.admin_id)["ok"])
            balance = self._balance(self.seller_id)
            again = release_escrow(escrow_id, admin_id=self.admin_id)
            self.assertEqual(again["error"], "INVALID_STATE")
            self.assertEqual(again["details"]["current_status"], "released")
            refund = refund_escrow(escrow_id, admin_id=self.admin_id)
            self.assertEqual(refund["error"], "INVALID_STATE")
            self.assertAlmostEqual(self._balance(self.seller_id), balance, places=2)

        res = self.client.post(f"/api/admin/escrow/{escrow_id}/release", json={}, headers=self._auth(self.admin_id))
        self.assertEqual(res.status_code, 400)
        body = res.get_json(force=True)
        self.assertFalse(body["success"])
        self.assertEqual(body["error"], "INVALID_STATE")

    def test_failure_mid_settlement_leaves_escrow_held(self):
        with self.app.app_context():
            escrow_id = self._held_escrow(70.0)
            before = self._balance(self.seller_id)
            ledger_rows = WalletTransaction.query.count()
            with patch(
                "marketcore.services.escrow_service.record_admin_action",
                side_effect=RuntimeError("audit store down"),
            ):
                result = release_escrow(escrow_id, admin_id=self.admin_id)
            self.assertFalse(result["ok"])
            self.assertEqual(result["error"], "INTERNAL")
            self.assertEqual(db.session.get(EscrowTransaction, escrow_id).status, "held")
            self.assertAlmostEqual(self._balance(self.seller_id), before, places=2)
            self.assertEqual(WalletTransaction.query.count(), ledger_rows)

            retry = release_escrow(escrow_id, admin_id=self.admin_id)
            self.assertTrue(retry["ok"], retry)

    def test_missing_admin_is_a_programming_error(self):
        with self.app.app_context():
            escrow_id = self._held_escrow(10.0)
            with self.assertRaises(ValueError):
                release_escrow(escrow_id, admin_id=None)
            with self.assertRaises(ValueError):
                refund_escrow(escrow_id, admin_id=None)

    def test_unknown_escrow_is_not_found(self):
        with self.app.app_context():
            result = release_escrow(987654, admin_id=self.admin_id)
        self.assertEqual(result["error"], "NOT_FOUND")

    def test_endpoints_require_admin(self):
        res = self.client.get("/api/admin/escrow/transactions")
        self.assertEqual(res.status_code, 401)
        res = self.client.get("/api/admin/escrow/stats", headers=self._auth(self.seller_id))
        self.assertEqual(res.status_code, 403)
        with self.app.app_context():
            escrow_id = self._held_escrow(20.0)
        res = self.client.post(f"/api/admin/escrow/{escrow_id}/refund", json={}, headers=self._auth(self.buyer_id))
        self.assertEqual(res.status_code, 403)
        with self.app.app_context():
            self.assertEqual(db.session.get(EscrowTransaction, escrow_id).status, "held")

    def test_release_endpoint(self):
        with self.app.app_context():
            escrow_id = self._held_escrow(12.0)
        res = self.client.post(
            f"/api/admin/escrow/{escrow_id}/release",
            json={"release_reason": "delivered and confirmed"},
            headers=self._auth(self.admin_id),
        )
        self.assertEqual(res.status_code, 200)
        body = res.get_json(force=True)
        self.assertTrue(body["success"])
        self.assertEqual(body["escrow"]["status"], "released")
        self.assertEqual(body["escrow"]["release_reason"], "delivered and confirmed")
        self.assertEqual(body["transaction_id"], escrow_id)
        with self.app.app_context():
            txn = WalletTransaction.query.filter_by(idempotency_key=f"escrow_release:{escrow_id}").one()
            self.assertEqual(body["wallet_transaction_id"], int(txn.id))

    def test_listing_and_stats(self):
        with self.app.app_context():
            before = escrow_stats()["stats"]
            held_id = self._held_escrow(15.0)
            refunded_id = self._held_escrow(25.0)
            self.assertTrue(refund_escrow(refunded_id, admin_id=self.admin_id)["ok"])
            after = escrow_stats()["stats"]
            self.assertEqual(after["held"]["count"] - before["held"]["count"], 1)
            self.assertEqual(after["refunded"]["count"] - before["refunded"]["count"], 1)
            self.assertAlmostEqual(after["refunded"]["amount"] - before["refunded"]["amount"], 25.0, places=2)

            listed = list_escrow_transactions(status="refunded", page=1, limit=100)
            ids = [row["id"] for row in listed["transactions"]]
            self.assertIn(refunded_id, ids)
            self.assertNotIn(held_id, ids)
            self.assertTrue(all(row["status"] == "refunded" for row in listed["transactions"]))

            first_page = list_escrow_transactions(page=1, limit=1)
            self.assertEqual(len(first_page["transactions"]), 1)
            self.assertEqual(first_page["pagination"]["limit"], 1)
            self.assertGreaterEqual(first_page["pagination"]["pages"], 2)

            bogus = list_escrow_transactions(status="frozen")
            self.assertEqual(bogus["error"], "INVALID_INPUT")

        res = self.client.get("/api/admin/escrow/transactions?status=held&limit=5", headers=self._auth(self.admin_id))
        self.assertEqual(res.status_code, 200)
        body = res.get_json(force=True)
        self.assertTrue(body["success"])
        self.assertLessEqual(len(body["transactions"]), 5)

        res = self.client.get("/api/admin/escrow/transactions?page=abc", headers=self._auth(self.admin_id))
        self.assertEqual(res.status_code, 400)

        res = self.client.get("/api/admin/escrow/stats", headers=self._auth(self.admin_id))
        self.assertEqual(res.status_code, 200)
        self.assertIn("released", res.get_json(force=True)["stats"])


if __name__ == "__main__":
    unittest.main()
