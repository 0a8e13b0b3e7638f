# cobranca_app/models/checkout_attempt.py
from __future__ import annotations
from datetime import datetime
from ..extensions import db

class CheckoutAttempt(db.Model):
    __tablename__ = "checkout_attempts"

    id = db.Column(db.Integer, primary_key=True)
    customer_email = db.Column(db.String(255), nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
