# cobranca_app/models/payment_title.py
# -*- coding: utf-8 -*-
from __future__ import annotations
from datetime import datetime
from sqlalchemy import text
from sqlalchemy.orm import validates
from ..extensions import db

TITLE_ISSUED = "issued"
TITLE_PAID = "paid"
TITLE_CANCELED = "canceled"

TITLE_TRANSITIONS = {
    TITLE_ISSUED: {TITLE_PAID, TITLE_CANCELED},
    TITLE_PAID: set(),
    TITLE_CANCELED: set(),
}

_ACTIVE = text("status <> 'canceled'")


class PaymentTitle(db.Model):
    __tablename__ = "payment_titles"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    method = db.Column(db.String(16), nullable=False, default="boleto")
    mode = db.Column(db.String(16), nullable=False)            # manual | registered
    provider = db.Column(db.String(32), nullable=False)        # manual, sandbox, asaas...
    provider_title_id = db.Column(db.String(120), unique=True)  # nulo até o provedor responder
    status = db.Column(db.String(16), nullable=False, default=TITLE_ISSUED, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    linha_digitavel = db.Column(db.String(64), nullable=False)
    barcode = db.Column(db.String(64), nullable=False)
    document_ref = db.Column(db.String(255))
    boleto_url = db.Column(db.Text)

    paid_at = db.Column(db.DateTime)
    canceled_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    order = db.relationship("Order", backref=db.backref("payment_titles", lazy="dynamic"))

    __table_args__ = (
        # no máximo um título não cancelado por pedido
        db.Index(
            "uq_payment_titles_active_order", "order_id",
            unique=True,
            postgresql_where=_ACTIVE,
            sqlite_where=_ACTIVE,
        ),
    )

    @validates("amount_cents", "order_id")
    def _freeze(self, key, value):
        current = getattr(self, key)
        if current is not None and current != value:
            raise ValueError(f"PaymentTitle.{key} é imutável")
        return value

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "method": self.method,
            "mode": self.mode,
            "provider": self.provider,
            "provider_title_id": self.provider_title_id,
            "status": self.status,
            "amount_cents": self.amount_cents,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "linha_digitavel": self.linha_digitavel,
            "barcode": self.barcode,
            "document_ref": self.document_ref,
            "boleto_url": self.boleto_url,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
        }
