from datetime import datetime
import json

from marketcore.extensions import db


class AdminAction(db.Model):
    __tablename__ = "admin_actions"

    id = db.Column(db.Integer, primary_key=True)
    admin_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    action_type = db.Column(db.String(64), nullable=False, index=True)
    target_type = db.Column(db.String(64), nullable=True)
    target_id = db.Column(db.Integer, nullable=True)
    details_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def details(self) -> dict:
        raw = self.details_json
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, dict):
                return parsed
        except Exception:
            pass
        return {"raw": str(raw)}

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "admin_id": int(self.admin_id),
            "action_type": self.action_type or "",
            "target_type": self.target_type or "",
            "target_id": int(self.target_id) if self.target_id is not None else None,
            "details": self.details(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
