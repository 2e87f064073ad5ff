from __future__ import annotations

import os
import time
import unittest

from marketcore import create_app
from marketcore.extensions import db
from marketcore.models import PlatformSetting, Product, User
from marketcore.services.pricing_service import calculate_buyer_price, quote_delivery


class PricingServiceTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev_db_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        with cls.app.app_context():
            db.create_all()
            stamp = time.time_ns()
            seller = User(name="Seller", email=f"pricing-seller-{stamp}@marketcore.test", role="seller")
            seller.set_password("Passw0rd!")
            db.session.add(seller)
            db.session.commit()
            a = Product(seller_id=int(seller.id), name="Kettle", price=100.0, marketplace_type="physical")
            b = Product(seller_id=int(seller.id), name="Mug", price=12.5, marketplace_type="physical")
            db.session.add_all([a, b])
            db.session.commit()
            cls.product_a = int(a.id)
            cls.product_b = int(b.id)

    @classmethod
    def tearDownClass(cls):
        if cls._prev_db_uri is None:
            os.environ.pop("SQLALCHEMY_DATABASE_URI", None)
        else:
            os.environ["SQLALCHEMY_DATABASE_URI"] = cls._prev_db_uri

    def tearDown(self):
        with self.app.app_context():
            PlatformSetting.query.delete()
            db.session.commit()

    def test_buyer_price_hides_home_delivery_fee(self):
        with self.app.app_context():
            out = calculate_buyer_price(100, "home", "physical")
        self.assertTrue(out["ok"])
        self.assertEqual(out["platform_margin"], 21.0)
        self.assertEqual(out["delivery_fee"], 6.0)
        self.assertEqual(out["final_price"], 127.0)
        self.assertEqual(out["display_price"], 127.0)
        self.assertEqual(out["customer_visible_delivery_fee"], 0.0)
        self.assertTrue(out["delivery_fee_hidden"])
        self.assertEqual(out["seller_payout"], 100.0)

    def test_manual_order_surfaces_delivery_fee(self):
        with self.app.app_context():
            out = calculate_buyer_price(100, "home", "physical", show_delivery_fee=True)
        self.assertEqual(out["final_price"], 127.0)
        self.assertEqual(out["display_price"], 121.0)
        self.assertEqual(out["customer_visible_delivery_fee"], 6.0)
        self.assertFalse(out["delivery_fee_hidden"])

    def test_pickup_delivery_is_free_by_default(self):
        with self.app.app_context():
            out = calculate_buyer_price(200, "pickup", "local", show_delivery_fee=True)
        self.assertEqual(out["delivery_fee"], 0.0)
        self.assertEqual(out["final_price"], 242.0)
        self.assertEqual(out["delivery_type"], "pickup")

    def test_fee_settings_are_read_from_platform_settings(self):
        with self.app.app_context():
            db.session.add_all(
                [
                    PlatformSetting(category="delivery", setting_key="home_delivery_fee_percent", setting_value="10"),
                    PlatformSetting(category="delivery", setting_key="home_delivery_flat_fee", setting_value="50"),
                ]
            )
            db.session.commit()
            out = calculate_buyer_price(100, "home", "physical")
        self.assertEqual(out["delivery_fee"], 60.0)
        self.assertEqual(out["final_price"], 181.0)

    def test_unreadable_setting_falls_back_to_default(self):
        with self.app.app_context():
            db.session.add(
                PlatformSetting(category="delivery", setting_key="home_delivery_fee_percent", setting_value="lots")
            )
            db.session.commit()
            out = calculate_buyer_price(100, "home", "physical")
        self.assertEqual(out["delivery_fee"], 6.0)

    def test_invalid_base_price_is_rejected(self):
        with self.app.app_context():
            negative = calculate_buyer_price(-5, "home", "physical")
            garbage = calculate_buyer_price("ten", "home", "physical")
        self.assertFalse(negative["ok"])
        self.assertEqual(negative["error"], "INVALID_INPUT")
        self.assertFalse(garbage["ok"])
        self.assertEqual(garbage["error"], "INVALID_INPUT")

    def test_quote_sums_all_lines(self):
        with self.app.app_context():
            out = quote_delivery(
                [{"product_id": self.product_a, "quantity": 1}, {"product_id": self.product_b, "quantity": 2}]
            )
        self.assertTrue(out["ok"])
        self.assertEqual(out["calculation"]["subtotal"], 125.0)
        self.assertEqual(out["calculation"]["delivery_fee"], 0.0)
        self.assertEqual(out["calculation"]["total"], 158.75)

    def test_quote_rejects_unknown_product(self):
        with self.app.app_context():
            out = quote_delivery([{"product_id": 999999, "quantity": 1}])
            empty = quote_delivery([])
        self.assertEqual(out["error"], "NOT_FOUND")
        self.assertEqual(empty["error"], "INVALID_INPUT")


if __name__ == "__main__":
    unittest.main()
