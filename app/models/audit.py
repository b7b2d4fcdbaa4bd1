"""
Audit log for engine actions (code issuance, tier upgrades, reviews).
"""
from datetime import datetime
from ..extensions import db


class AuditLog(db.Model):
    """Append-only audit trail."""

    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    actor = db.Column(db.String(100), nullable=False)  # user id or 'system'
    action = db.Column(db.String(100), nullable=False, index=True)
    resource_type = db.Column(db.String(50), nullable=False)
    resource_id = db.Column(db.String(64))
    details = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def __repr__(self):
        return f'<AuditLog {self.action} {self.resource_type}:{self.resource_id}>'

    def to_dict(self):
        return {
            'id': self.id,
            'actor': self.actor,
            'action': self.action,
            'resource_type': self.resource_type,
            'resource_id': self.resource_id,
            'details': self.details or {},
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
