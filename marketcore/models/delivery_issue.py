from datetime import datetime

from marketcore.extensions import db


class DeliveryIssue(db.Model):
    __tablename__ = "delivery_issues"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    reported_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    agent_id = db.Column(db.Integer, db.ForeignKey("agents.id"), nullable=True)
    issue_type = db.Column(db.String(40), nullable=False, default="other")
    description = db.Column(db.Text, nullable=False, default="")
    # open | resolved
    status = db.Column(db.String(16), nullable=False, default="open", index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "reported_by": int(self.reported_by),
            "agent_id": int(self.agent_id) if self.agent_id is not None else None,
            "issue_type": self.issue_type or "other",
            "description": self.description or "",
            "status": self.status or "open",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class AgentRating(db.Model):
    __tablename__ = "agent_ratings"
    __table_args__ = (
        db.UniqueConstraint("order_id", "agent_id", name="uq_agent_ratings_order_agent"),
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    agent_id = db.Column(db.Integer, db.ForeignKey("agents.id"), nullable=False, index=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    rating = db.Column(db.Integer, nullable=False)
    feedback = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
