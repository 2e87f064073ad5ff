from datetime import datetime

from marketcore.extensions import db


class PickupSite(db.Model):
    __tablename__ = "pickup_sites"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(160), nullable=False, default="")
    address = db.Column(db.String(255), nullable=False, default="")
    manager_agent_id = db.Column(db.Integer, db.ForeignKey("agents.id"), nullable=True, index=True)

    capacity = db.Column(db.Integer, nullable=False, default=50)
    current_load = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def has_capacity(self) -> bool:
        return int(self.current_load or 0) < int(self.capacity or 0)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "name": self.name or "",
            "address": self.address or "",
            "manager_agent_id": int(self.manager_agent_id) if self.manager_agent_id is not None else None,
            "capacity": int(self.capacity or 0),
            "current_load": int(self.current_load or 0),
            "is_active": bool(self.is_active),
        }
