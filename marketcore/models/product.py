from datetime import datetime

from marketcore.extensions import db


class Product(db.Model):
    __tablename__ = "products"

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    name = db.Column(db.String(200), nullable=False, default="")
    # Seller's base (purchasing) price; buyers see the marked-up price.
    price = db.Column(db.Float, nullable=False, default=0.0)
    # physical | local
    marketplace_type = db.Column(db.String(16), nullable=False, default="physical", index=True)
    stock_quantity = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "seller_id": int(self.seller_id),
            "name": self.name or "",
            "price": float(self.price or 0.0),
            "marketplace_type": self.marketplace_type or "physical",
            "stock_quantity": int(self.stock_quantity or 0),
            "is_active": bool(self.is_active),
        }


class CartItem(db.Model):
    __tablename__ = "cart_items"
    __table_args__ = (
        db.UniqueConstraint("user_id", "product_id", name="uq_cart_items_user_product"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
