from __future__ import annotations

import os
import time
import unittest
from unittest.mock import patch

from marketcore import create_app
from marketcore.extensions import db
from marketcore.integrations.email.mock_provider import MockEmailProvider
from marketcore.models import (
    Agent,
    AgentEarning,
    CartItem,
    Order,
    OrderTracking,
    PickupSite,
    Product,
    ReferralLink,
    ReferralPurchase,
    User,
)
from marketcore.services import order_service
from marketcore.services.referral_service import create_referral_link
from marketcore.utils.jwt_utils import create_token


def _user(role: str, label: str, stamp: int) -> User:
    u = User(name=label.title(), email=f"create-{label}-{stamp}@marketcore.test", role=role)
    u.set_password("Passw0rd!")
    return u


class OrderCreationTestCase(unittest.TestCase):
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
            buyer = _user("buyer", "buyer", stamp)
            other_buyer = _user("buyer", "other", stamp)
            referrer = _user("buyer", "referrer", stamp)
            seller = _user("seller", "seller", stamp)
            seller_two = _user("seller", "seller2", stamp)
            admin = _user("admin", "admin", stamp)
            psm_user = _user("agent", "psm", stamp)
            db.session.add_all([buyer, other_buyer, referrer, seller, seller_two, admin, psm_user])
            db.session.commit()

            psm = Agent(user_id=int(psm_user.id), agent_type=Agent.TYPE_PICKUP_SITE_MANAGER)
            db.session.add(psm)
            db.session.commit()
            open_site = PickupSite(name="Kimironko", address="KG 11 Ave", capacity=10, manager_agent_id=int(psm.id))
            full_site = PickupSite(name="Nyabugogo", address="KN 1 Rd", capacity=1, current_load=1)
            physical = Product(seller_id=int(seller.id), name="Radio", price=100.0, marketplace_type="physical")
            local = Product(seller_id=int(seller.id), name="Avocados", price=200.0, marketplace_type="local")
            foreign = Product(seller_id=int(seller_two.id), name="Lamp", price=50.0, marketplace_type="physical")
            db.session.add_all([open_site, full_site, physical, local, foreign])
            db.session.commit()

            cls.buyer_id = int(buyer.id)
            cls.other_buyer_id = int(other_buyer.id)
            cls.referrer_id = int(referrer.id)
            cls.seller_id = int(seller.id)
            cls.admin_id = int(admin.id)
            cls.admin_email = admin.email
            cls.buyer_email = buyer.email
            cls.psm_user_id = int(psm_user.id)
            cls.psm_id = int(psm.id)
            cls.open_site_id = int(open_site.id)
            cls.full_site_id = int(full_site.id)
            cls.physical_id = int(physical.id)
            cls.local_id = int(local.id)
            cls.foreign_id = int(foreign.id)
            cls.referral_code = create_referral_link(referrer).referral_code

    @classmethod
    def tearDownClass(cls):
        for key, value in cls._prev_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def setUp(self):
        MockEmailProvider.reset()

    def _auth(self, user_id: int) -> dict:
        return {"Authorization": f"Bearer {create_token(int(user_id))}"}

    def _payload(self, **overrides) -> dict:
        body = {
            "items": [{"product_id": self.physical_id, "quantity": 1}],
            "shipping": {"name": "Aline", "phone": "0788000000", "city": "Kigali"},
            "payment": {"method": "mobile_money"},
            "delivery_address": {"street": "KG 7 Ave", "city": "Kigali"},
        }
        body.update(overrides)
        return body

    def _order_count(self, buyer_id: int) -> int:
        with self.app.app_context():
            return Order.query.filter_by(buyer_id=int(buyer_id)).count()

    def test_buyer_order_hides_delivery_fee_and_snapshots_commissions(self):
        res = self.client.post("/api/orders", json=self._payload(), headers=self._auth(self.buyer_id))
        self.assertEqual(res.status_code, 201)
        body = res.get_json(force=True)
        self.assertTrue(body["ok"])
        self.assertTrue(body["success"])
        self.assertEqual(body["order"]["status"], "pending")
        self.assertEqual(body["order"]["buyer_id"], self.buyer_id)
        self.assertEqual(body["order"]["buyer_email"], self.buyer_email)
        self.assertEqual(body["order"]["total_amount"], 100.0)
        self.assertEqual(body["order"]["final_buyer_price"], 127.0)
        self.assertEqual(body["pricing"]["customer_visible_delivery_fee"], 0.0)

        with self.app.app_context():
            order = db.session.get(Order, int(body["order"]["id"]))
            self.assertEqual(order.delivery_type, "home")
            self.assertTrue(order.delivery_fee_hidden)
            self.assertEqual(order.delivery_fee, 6.0)
            self.assertEqual(order.seller_payout, 100.0)
            self.assertEqual(order.to_dict()["delivery_fee"], 0.0)
            snapshot = order.commission_snapshot()
            self.assertEqual(snapshot["pickup_delivery_agent"], 14.70)
            self.assertEqual(snapshot["platform_commission"], 6.30)
            self.assertEqual(AgentEarning.query.filter_by(order_id=int(order.id)).count(), 0)
            tracking = OrderTracking.query.filter_by(order_id=int(order.id)).all()
            self.assertEqual([t.status for t in tracking], ["pending"])
            self.assertEqual(len(order.items), 1)

        recipients = {m["to"] for m in MockEmailProvider.outbox}
        self.assertIn(self.buyer_email, recipients)
        self.assertIn(self.admin_email, recipients)

    def test_buyer_cannot_choose_pickup_delivery(self):
        payload = self._payload(delivery_method="pickup", pickup_site_id=self.open_site_id)
        res = self.client.post("/api/orders", json=payload, headers=self._auth(self.buyer_id))
        self.assertEqual(res.status_code, 201)
        with self.app.app_context():
            order = db.session.get(Order, int(res.get_json(force=True)["order"]["id"]))
            self.assertEqual(order.delivery_type, "home")
            self.assertIsNone(order.pickup_site_id)

    def test_empty_items_is_rejected_without_writes(self):
        before = self._order_count(self.buyer_id)
        res = self.client.post("/api/orders", json=self._payload(items=[]), headers=self._auth(self.buyer_id))
        self.assertEqual(res.status_code, 400)
        body = res.get_json(force=True)
        self.assertEqual(body["error"], "INVALID_INPUT")
        self.assertFalse(body["success"])
        self.assertEqual(self._order_count(self.buyer_id), before)

    def test_missing_delivery_address_is_rejected(self):
        payload = self._payload()
        payload.pop("delivery_address")
        res = self.client.post("/api/orders", json=payload, headers=self._auth(self.buyer_id))
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json(force=True)["error"], "INVALID_INPUT")

    def test_missing_payment_method_is_rejected(self):
        res = self.client.post(
            "/api/orders", json=self._payload(payment={"note": "later"}), headers=self._auth(self.buyer_id)
        )
        self.assertEqual(res.status_code, 400)

    def test_seller_role_is_forbidden(self):
        res = self.client.post("/api/orders", json=self._payload(), headers=self._auth(self.seller_id))
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.get_json(force=True)["error"], "FORBIDDEN")

    def test_admin_role_is_forbidden(self):
        with self.app.app_context():
            before = Order.query.count()
        res = self.client.post("/api/orders", json=self._payload(), headers=self._auth(self.admin_id))
        self.assertEqual(res.status_code, 403)
        body = res.get_json(force=True)
        self.assertFalse(body["success"])
        self.assertEqual(body["error"], "FORBIDDEN")
        self.assertEqual(self._order_count(self.admin_id), 0)
        with self.app.app_context():
            self.assertEqual(Order.query.count(), before)

    def test_missing_token_is_unauthorized(self):
        res = self.client.post("/api/orders", json=self._payload())
        self.assertEqual(res.status_code, 401)
        body = res.get_json(force=True)
        self.assertEqual(body["error"], "UNAUTHORIZED")
        self.assertEqual(body["trace_id"], res.headers.get("X-Request-Id"))

    def test_unknown_product_is_not_found(self):
        res = self.client.post(
            "/api/orders",
            json=self._payload(items=[{"product_id": 987654, "quantity": 1}]),
            headers=self._auth(self.buyer_id),
        )
        self.assertEqual(res.status_code, 404)

    def test_mixed_seller_cart_is_rejected(self):
        items = [{"product_id": self.physical_id, "quantity": 1}, {"product_id": self.foreign_id, "quantity": 1}]
        res = self.client.post("/api/orders", json=self._payload(items=items), headers=self._auth(self.buyer_id))
        self.assertEqual(res.status_code, 400)

    def test_manual_pickup_order_by_site_manager(self):
        payload = self._payload(delivery_method="pickup", pickup_site_id=self.open_site_id)
        payload.pop("delivery_address")
        res = self.client.post("/api/orders", json=payload, headers=self._auth(self.psm_user_id))
        self.assertEqual(res.status_code, 201)
        body = res.get_json(force=True)
        self.assertEqual(body["pricing"]["delivery_type"], "pickup")
        self.assertFalse(body["pricing"]["delivery_fee_hidden"])
        with self.app.app_context():
            order = db.session.get(Order, int(body["order"]["id"]))
            self.assertTrue(order.is_manual_order)
            self.assertEqual(order.psm_agent_id, self.psm_id)
            self.assertEqual(order.final_buyer_price, 121.0)
            earning = AgentEarning.query.filter_by(order_id=int(order.id), earnings_type="pickup_site_manager").one()
            self.assertEqual(earning.amount, 3.15)
            self.assertEqual(earning.status, "pending")
            site = db.session.get(PickupSite, self.open_site_id)
            self.assertGreaterEqual(site.current_load, 1)

    def test_full_pickup_site_reports_capacity_exceeded(self):
        payload = self._payload(delivery_method="pickup", pickup_site_id=self.full_site_id)
        res = self.client.post("/api/orders", json=payload, headers=self._auth(self.psm_user_id))
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json(force=True)["error"], "CAPACITY_EXCEEDED")
        with self.app.app_context():
            self.assertEqual(db.session.get(PickupSite, self.full_site_id).current_load, 1)

    def test_rejected_pickup_checkout_ends_the_transaction(self):
        unknown_product = self._payload(
            delivery_method="pickup",
            pickup_site_id=self.open_site_id,
            items=[{"product_id": 987654, "quantity": 1}],
        )
        full_site = self._payload(delivery_method="pickup", pickup_site_id=self.full_site_id)
        missing_site = self._payload(delivery_method="pickup", pickup_site_id=987654)
        cases = ((unknown_product, "NOT_FOUND"), (full_site, "CAPACITY_EXCEEDED"), (missing_site, "NOT_FOUND"))
        with self.app.app_context():
            open_load = db.session.get(PickupSite, self.open_site_id).current_load
            for payload, error in cases:
                manager = db.session.get(User, self.psm_user_id)
                result = order_service.create_order(manager, payload)
                self.assertEqual(result["error"], error)
                self.assertFalse(db.session.in_transaction())
            self.assertEqual(db.session.get(PickupSite, self.open_site_id).current_load, open_load)
            self.assertEqual(db.session.get(PickupSite, self.full_site_id).current_load, 1)

    def test_owner_mismatch_is_a_security_violation_and_rolls_back(self):
        before = self._order_count(self.other_buyer_id)
        with patch("marketcore.services.order_service._verify_order_owner", return_value=False):
            res = self.client.post("/api/orders", json=self._payload(), headers=self._auth(self.other_buyer_id))
        self.assertEqual(res.status_code, 500)
        body = res.get_json(force=True)
        self.assertEqual(body["error"], "SECURITY_VIOLATION")
        self.assertEqual(self._order_count(self.other_buyer_id), before)

    def test_referral_code_books_referrer_commission(self):
        payload = self._payload(referral_code=self.referral_code.lower())
        res = self.client.post("/api/orders", json=payload, headers=self._auth(self.other_buyer_id))
        self.assertEqual(res.status_code, 201)
        with self.app.app_context():
            order = db.session.get(Order, int(res.get_json(force=True)["order"]["id"]))
            self.assertEqual(order.referral_code, self.referral_code)
            purchase = ReferralPurchase.query.filter_by(order_id=int(order.id)).one()
            self.assertEqual(purchase.referrer_user_id, self.referrer_id)
            self.assertEqual(purchase.commission_amount, 3.15)
            earning = AgentEarning.query.filter_by(order_id=int(order.id), earnings_type="referral").one()
            self.assertEqual(earning.user_id, self.referrer_id)
            self.assertGreaterEqual(
                ReferralLink.query.filter_by(referral_code=self.referral_code).one().usage_count, 1
            )

    def test_self_referral_is_ignored(self):
        payload = self._payload(referral_code=self.referral_code)
        res = self.client.post("/api/orders", json=payload, headers=self._auth(self.referrer_id))
        self.assertEqual(res.status_code, 201)
        with self.app.app_context():
            order_id = int(res.get_json(force=True)["order"]["id"])
            self.assertIsNone(db.session.get(Order, order_id).referral_code)
            self.assertEqual(ReferralPurchase.query.filter_by(order_id=order_id).count(), 0)

    def test_ordered_products_leave_the_cart(self):
        with self.app.app_context():
            db.session.add(CartItem(user_id=self.other_buyer_id, product_id=self.local_id, quantity=2))
            db.session.commit()
        payload = self._payload(items=[{"product_id": self.local_id, "quantity": 2}])
        res = self.client.post("/api/orders", json=payload, headers=self._auth(self.other_buyer_id))
        self.assertEqual(res.status_code, 201)
        self.assertEqual(res.get_json(force=True)["order"]["total_amount"], 400.0)
        with self.app.app_context():
            self.assertEqual(CartItem.query.filter_by(user_id=self.other_buyer_id).count(), 0)

    def test_email_failure_does_not_fail_order_creation(self):
        with patch.dict(os.environ, {"MOCK_EMAIL_FORCE_FAIL": "1"}):
            res = self.client.post("/api/orders", json=self._payload(), headers=self._auth(self.buyer_id))
        self.assertEqual(res.status_code, 201)
        self.assertEqual(MockEmailProvider.outbox, [])

        with patch(
            "marketcore.services.email_service.notify_order_created",
            side_effect=RuntimeError("smtp exploded"),
        ):
            res = self.client.post("/api/orders", json=self._payload(), headers=self._auth(self.buyer_id))
        self.assertEqual(res.status_code, 201)
        self.assertTrue(res.get_json(force=True)["ok"])


if __name__ == "__main__":
    unittest.main()
