# cobranca_app/models/outbox.py
from __future__ import annotations
import json
from datetime import datetime
from ..extensions import db

class NotificationOutbox(db.Model):
    __tablename__ = "notification_outbox"

    id = db.Column(db.Integer, primary_key=True)
    channel = db.Column(db.String(16), nullable=False)               # email | whatsapp
    event = db.Column(db.String(40), nullable=False)                 # order_created, order_paid
    payload_json = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)  # pending|sent|failed
    attempts = db.Column(db.Integer, nullable=False, default=0)
    next_attempt_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    last_error = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    sent_at = db.Column(db.DateTime)

    @property
    def payload(self):
        return json.loads(self.payload_json or "{}")
