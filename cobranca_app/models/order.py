# cobranca_app/models/order.py
# -*- coding: utf-8 -*-
from __future__ import annotations
import json
from datetime import datetime
from sqlalchemy.orm import validates
from ..extensions import db

STATUS_PENDING = "pending_boleto"
STATUS_ISSUED = "issued"
STATUS_PAID = "paid"
STATUS_CANCELLED = "cancelled"

# pedidos só andam para frente (override do admin à parte)
ORDER_TRANSITIONS = {
    STATUS_PENDING: {STATUS_ISSUED, STATUS_PAID, STATUS_CANCELLED},
    STATUS_ISSUED: {STATUS_PAID, STATUS_CANCELLED},
    STATUS_PAID: set(),
    STATUS_CANCELLED: set(),
}

# snapshot congelado na criação
IMMUTABLE_FIELDS = (
    "order_nsu", "customer_name", "customer_email", "customer_phone",
    "customer_cpf", "items_json", "total_amount_cents", "discount_cents",
)


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    order_nsu = db.Column(db.String(64), unique=True, nullable=False, index=True)

    customer_name = db.Column(db.String(100), nullable=False)
    customer_email = db.Column(db.String(255), nullable=False, index=True)
    customer_phone = db.Column(db.String(20))
    customer_cpf = db.Column(db.String(20))

    items_json = db.Column(db.Text, nullable=False)           # [{id,name,quantity,price_cents}]
    coupon_code = db.Column(db.String(60))
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_amount_cents = db.Column(db.Integer, nullable=False)

    payment_method = db.Column(db.String(20), nullable=False, default="boleto")
    status = db.Column(db.String(20), nullable=False, default=STATUS_PENDING, index=True)

    paid_amount_cents = db.Column(db.Integer)
    paid_at = db.Column(db.DateTime)
    confirmation_source = db.Column(db.String(40))           # webhook, asaas_webhook, admin, sandbox

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @validates(*IMMUTABLE_FIELDS)
    def _freeze(self, key, value):
        current = getattr(self, key)
        if current is not None and current != value:
            raise ValueError(f"Order.{key} é imutável após a criação")
        return value

    @classmethod
    def lock(cls, order_id: int):
        """SELECT ... FOR UPDATE do pedido, relendo o status do banco.

        Toda escrita que envolve pedido e título trava o pedido primeiro.
        """
        return cls.query.filter(cls.id == order_id).populate_existing().with_for_update().first()

    @property
    def items(self):
        return json.loads(self.items_json or "[]")

    def can_transition(self, new_status: str) -> bool:
        return new_status in ORDER_TRANSITIONS.get(self.status, set())

    def transition_to(self, new_status: str, *, force: bool = False) -> bool:
        """Aplica a transição; devolve False se já estava no status. force = override do admin."""
        if self.status == new_status:
            return False
        if not force and not self.can_transition(new_status):
            raise ValueError(f"transição inválida {self.status} -> {new_status}")
        self.status = new_status
        return True

    def to_dict(self):
        return {
            "id": self.id,
            "order_nsu": self.order_nsu,
            "customer": {
                "name": self.customer_name,
                "email": self.customer_email,
                "phone": self.customer_phone,
            },
            "items": self.items,
            "coupon_code": self.coupon_code,
            "discount_cents": self.discount_cents,
            "total_amount_cents": self.total_amount_cents,
            "status": self.status,
            "paid_amount_cents": self.paid_amount_cents,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "confirmation_source": self.confirmation_source,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
