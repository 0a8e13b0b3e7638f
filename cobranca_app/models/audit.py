# cobranca_app/models/audit.py
# -*- coding: utf-8 -*-
from __future__ import annotations
import json
from datetime import datetime
from ..extensions import db

class AuditLog(db.Model):
    __tablename__ = "audit_logs"
    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(80), nullable=False)        # confirm_boleto_payment, boleto_title_paid...
    entity_type = db.Column(db.String(40), nullable=False)   # order | payment_title
    entity_id = db.Column(db.String(64), nullable=False, index=True)
    actor_id = db.Column(db.String(64))                      # None = sistema (webhook)
    actor_email = db.Column(db.String(180))
    details_json = db.Column(db.Text)                        # compact JSON string
    ip_address = db.Column(db.String(64))
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    @property
    def details(self):
        return json.loads(self.details_json or "{}")

    def to_dict(self):
        return {
            "id": self.id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "actor_email": self.actor_email,
            "details": self.details,
            "ip_address": self.ip_address,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
