from datetime import datetime
import json

from marketcore.extensions import db


class Agent(db.Model):
    __tablename__ = "agents"

    TYPE_FAST_DELIVERY = "fast_delivery"
    TYPE_PICKUP_DELIVERY = "pickup_delivery"
    TYPE_PICKUP_SITE_MANAGER = "pickup_site_manager"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True, index=True)

    agent_type = db.Column(db.String(32), nullable=False, index=True)
    # available | busy | suspended
    status = db.Column(db.String(24), nullable=False, default="available", index=True)

    rating = db.Column(db.Float, nullable=False, default=0.0)
    total_reviews = db.Column(db.Integer, nullable=False, default=0)
    total_deliveries = db.Column(db.Integer, nullable=False, default=0)
    successful_deliveries = db.Column(db.Integer, nullable=False, default=0)
    total_earnings = db.Column(db.Float, nullable=False, default=0.0)

    current_location_json = db.Column(db.Text, nullable=True)
    last_active_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def current_location(self) -> dict:
        raw = self.current_location_json
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, dict):
                return parsed
        except Exception:
            pass
        return {}

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "agent_type": self.agent_type or "",
            "status": self.status or "available",
            "rating": round(float(self.rating or 0.0), 2),
            "total_reviews": int(self.total_reviews or 0),
            "total_deliveries": int(self.total_deliveries or 0),
            "successful_deliveries": int(self.successful_deliveries or 0),
            "total_earnings": round(float(self.total_earnings or 0.0), 2),
            "current_location": self.current_location(),
        }
