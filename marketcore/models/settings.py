from datetime import datetime

from marketcore.extensions import db


class PlatformSetting(db.Model):
    __tablename__ = "platform_settings"
    __table_args__ = (
        db.UniqueConstraint("category", "setting_key", name="uq_platform_settings_category_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    category = db.Column(db.String(40), nullable=False, index=True)
    setting_key = db.Column(db.String(80), nullable=False)
    setting_value = db.Column(db.String(255), nullable=False, default="")
    description = db.Column(db.String(255), nullable=True)
    updated_by = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "category": self.category or "",
            "key": self.setting_key or "",
            "value": self.setting_value or "",
            "description": self.description or "",
        }
