# cobranca_app/services/reconciler.py
# -*- coding: utf-8 -*-
"""
Baixa de boletos: aplica eventos do provedor (webhook) ou a confirmação
manual do admin ao título e ao pedido, sempre dentro de uma transação e
com o pedido travado (with_for_update), para que replays não dupliquem
transição nem auditoria.
"""
from __future__ import annotations
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from flask import current_app

from ..extensions import db
from ..models import AuditLog, Order, PaymentTitle
from ..models.order import STATUS_PAID, STATUS_CANCELLED
from ..models.payment_title import TITLE_PAID, TITLE_CANCELED
from ..errors import (
    Forbidden, OrderNotFound, OrderStateConflict, TitleNotFound, Unauthorized, ValidationError,
)
from .settings import load_config
from . import notifications

CONFIRMED = "CONFIRMED"
RECEIVED = "RECEIVED"
OVERDUE = "OVERDUE"
CANCELLED = "CANCELLED"
DELETED = "DELETED"

CONFIRM_EVENTS = {CONFIRMED, RECEIVED}
CANCEL_EVENTS = {OVERDUE, CANCELLED, DELETED}

OUTCOME_APPLIED = "applied"
OUTCOME_NOOP = "noop"
OUTCOME_IGNORED = "ignored"

# status do webhook genérico da loja -> evento
_BOLETO_STATUS = {
    "paid": CONFIRMED,
    "confirmed": CONFIRMED,
    "received": RECEIVED,
    "overdue": OVERDUE,
    "expired": OVERDUE,
    "canceled": CANCELLED,
    "cancelled": CANCELLED,
    "deleted": DELETED,
}

_ASAAS_STATUS = {
    "RECEIVED": RECEIVED,
    "CONFIRMED": CONFIRMED,
    "RECEIVED_IN_CASH": RECEIVED,
    "OVERDUE": OVERDUE,
    "CANCELED": CANCELLED,
    "CANCELLED": CANCELLED,
    "DELETED": DELETED,
}


@dataclass(frozen=True)
class WebhookEvent:
    event_type: str
    provider_title_id: Optional[str] = None
    order_reference: Optional[str] = None
    source: str = "webhook"


@dataclass
class ReconcileResult:
    outcome: str
    order: Order
    title: Optional[PaymentTitle] = None

    @property
    def changed(self) -> bool:
        return self.outcome == OUTCOME_APPLIED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "outcome": self.outcome,
            "order_nsu": self.order.order_nsu,
            "order_status": self.order.status,
            "title_status": self.title.status if self.title else None,
        }


def parse_boleto_webhook(payload) -> Optional[WebhookEvent]:
    """{provider_title_id?, order_nsu?, status?}; status ausente vale "paid"."""
    if not isinstance(payload, dict):
        raise ValidationError("Payload inválido")
    title_id = str(payload.get("provider_title_id") or "").strip() or None
    ref = str(payload.get("order_nsu") or "").strip() or None
    if not title_id and not ref:
        raise ValidationError("Informe provider_title_id ou order_nsu")
    status = str(payload.get("status") or "paid").strip().lower()
    event_type = _BOLETO_STATUS.get(status)
    if event_type is None:
        return None
    return WebhookEvent(event_type, provider_title_id=title_id, order_reference=ref, source="webhook")


def parse_asaas_webhook(payload) -> Optional[WebhookEvent]:
    """{event: PAYMENT_*, payment: {id, status, externalReference}}."""
    if not isinstance(payload, dict):
        raise ValidationError("Payload inválido")
    payment = payload.get("payment") or {}
    status = str(payment.get("status") or "").upper()
    event_type = _ASAAS_STATUS.get(status)
    if event_type is None:
        event = str(payload.get("event") or "").upper()
        event_type = _ASAAS_STATUS.get(event.replace("PAYMENT_", "", 1))
    if event_type is None:
        return None
    title_id = str(payment.get("id") or "").strip() or None
    ref = str(payment.get("externalReference") or "").strip() or None
    if not title_id and not ref:
        raise ValidationError("Pagamento sem id/externalReference")
    return WebhookEvent(event_type, provider_title_id=title_id, order_reference=ref, source="asaas_webhook")


# ---------------------------------------------------------------------
# Auditoria
# ---------------------------------------------------------------------
def audit(action: str, order: Order, *, actor=None, ip: Optional[str] = None, **details) -> AuditLog:
    details.setdefault("order_nsu", order.order_nsu)
    details.setdefault("customer_name", order.customer_name)
    details.setdefault("customer_email", order.customer_email)
    details.setdefault("total_amount", order.total_amount_cents)
    if actor is not None:
        details.setdefault("admin_name", actor.name)
    entry = AuditLog(
        action=action,
        entity_type="order",
        entity_id=str(order.id),
        actor_id=str(actor.id) if actor is not None else None,
        actor_email=actor.email if actor is not None else None,
        details_json=json.dumps(details, ensure_ascii=False, default=str, separators=(",", ":")),
        ip_address=ip,
    )
    db.session.add(entry)
    return entry


def list_audit_logs(order_id: Optional[int] = None, page: int = 1, limit: int = 50) -> Dict[str, Any]:
    page = max(1, int(page or 1))
    limit = min(200, max(1, int(limit or 50)))
    q = AuditLog.query
    if order_id is not None:
        q = q.filter(AuditLog.entity_type == "order", AuditLog.entity_id == str(order_id))
    total = q.count()
    rows = q.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return {"items": [r.to_dict() for r in rows], "page": page, "limit": limit, "total": total}


# ---------------------------------------------------------------------
# Núcleo
# ---------------------------------------------------------------------
# ordem das travas em todo o módulo (e em issuer.issue): pedido, depois título
def _lock_title(title_id: int) -> Optional[PaymentTitle]:
    return (
        PaymentTitle.query
        .filter(PaymentTitle.id == title_id)
        .populate_existing()
        .with_for_update()
        .first()
    )


def _resolve(event: WebhookEvent):
    order_id = None
    title_id = None
    if event.provider_title_id:
        # só leitura: a trava do título vem depois da do pedido
        found = (
            db.session.query(PaymentTitle.id, PaymentTitle.order_id)
            .filter(PaymentTitle.provider_title_id == event.provider_title_id)
            .first()
        )
        if found is not None:
            title_id, order_id = found
    if order_id is None and event.order_reference:
        order_id = db.session.query(Order.id).filter(Order.order_nsu == event.order_reference).scalar()
    order = Order.lock(order_id) if order_id is not None else None
    if order is None:
        raise TitleNotFound(
            f"Nenhum título para provider_title_id={event.provider_title_id!r} / order={event.order_reference!r}"
        )
    if title_id is not None:
        return _lock_title(title_id), order
    title = (
        PaymentTitle.query
        .filter(PaymentTitle.order_id == order.id)
        .order_by((PaymentTitle.status == TITLE_CANCELED).asc(), PaymentTitle.id.desc())
        .populate_existing()
        .with_for_update()
        .first()
    )
    return title, order


def _confirm(order: Order, title: Optional[PaymentTitle], source: str, *, actor=None, ip=None,
             paid_amount_cents: Optional[int] = None, notes: str = "", manual: bool = False) -> ReconcileResult:
    action = "confirm_boleto_payment" if manual else "boleto_payment_confirmed"
    previous = order.status

    if order.status == STATUS_PAID or (title is not None and title.status == TITLE_PAID):
        if manual:
            audit(action, order, actor=actor, ip=ip, previous_status=previous, new_status=order.status,
                  paid_amount=order.paid_amount_cents, notes=notes, source=source, noop=True)
            db.session.commit()
        else:
            db.session.rollback()
        return ReconcileResult(OUTCOME_NOOP, order, title)

    if order.status == STATUS_CANCELLED:
        db.session.rollback()
        raise OrderStateConflict(f"Pedido {order.order_nsu} está cancelado")

    if title is not None and title.status == TITLE_CANCELED:
        # título antigo cancelado; o pedido segue com outro título (ou nenhum)
        current_app.logger.warning(
            "Confirmação ignorada: título %s de %s está cancelado", title.id, order.order_nsu,
        )
        db.session.rollback()
        return ReconcileResult(OUTCOME_IGNORED, order, title)

    now = datetime.utcnow()
    if title is not None:
        title.status = TITLE_PAID
        title.paid_at = now
    order.transition_to(STATUS_PAID)
    order.paid_at = now
    order.paid_amount_cents = paid_amount_cents if paid_amount_cents is not None else order.total_amount_cents
    order.confirmation_source = source
    audit(
        action, order, actor=actor, ip=ip,
        previous_status=previous, new_status=order.status,
        paid_amount=order.paid_amount_cents, notes=notes, source=source,
        payment_title_id=title.id if title is not None else None,
        provider_title_id=title.provider_title_id if title is not None else None,
    )
    notifications.notify_order(order, notifications.EVENT_ORDER_PAID)
    db.session.commit()
    current_app.logger.info("Pedido %s pago (origem=%s)", order.order_nsu, source)
    notifications.kick()
    return ReconcileResult(OUTCOME_APPLIED, order, title)


def _cancel(order: Order, title: Optional[PaymentTitle], event: WebhookEvent) -> ReconcileResult:
    if title is None:
        db.session.rollback()
        raise TitleNotFound(f"Pedido {order.order_nsu} não tem título para cancelar")
    if title.status == TITLE_PAID:
        # título pago nunca volta atrás
        current_app.logger.warning(
            "Evento %s ignorado: título %s de %s já está pago", event.event_type, title.id, order.order_nsu,
        )
        db.session.rollback()
        return ReconcileResult(OUTCOME_IGNORED, order, title)
    if title.status == TITLE_CANCELED:
        db.session.rollback()
        return ReconcileResult(OUTCOME_NOOP, order, title)

    previous = order.status
    title.status = TITLE_CANCELED
    title.canceled_at = datetime.utcnow()
    if order.can_transition(STATUS_CANCELLED):
        order.transition_to(STATUS_CANCELLED)
    audit(
        "boleto_title_canceled", order,
        previous_status=previous, new_status=order.status,
        event=event.event_type, source=event.source,
        payment_title_id=title.id, provider_title_id=title.provider_title_id,
    )
    if order.status == STATUS_CANCELLED:
        notifications.notify_order(order, notifications.EVENT_ORDER_CANCELLED, reason=event.event_type)
    db.session.commit()
    current_app.logger.info("Título %s de %s cancelado (%s)", title.id, order.order_nsu, event.event_type)
    notifications.kick()
    return ReconcileResult(OUTCOME_APPLIED, order, title)


def apply_event(event: WebhookEvent, *, actor=None, ip: Optional[str] = None) -> ReconcileResult:
    title, order = _resolve(event)
    if event.event_type in CONFIRM_EVENTS:
        return _confirm(order, title, event.source, actor=actor, ip=ip)
    if event.event_type in CANCEL_EVENTS:
        return _cancel(order, title, event)
    db.session.rollback()
    raise ValidationError(f"Evento não suportado: {event.event_type}")


def _require_admin(actor) -> None:
    if actor is None:
        raise Unauthorized("Faça login para acessar.")
    if not actor.is_admin:
        raise Forbidden("Acesso restrito ao administrador.")


def confirm_manual(order_id: int, actor, *, paid_amount_cents: Optional[int] = None,
                   notes: str = "", ip: Optional[str] = None) -> ReconcileResult:
    _require_admin(actor)
    order = Order.lock(order_id)
    if order is None:
        raise OrderNotFound(f"Pedido {order_id} não encontrado")
    if paid_amount_cents is not None and paid_amount_cents < 0:
        raise ValidationError("Valor pago não pode ser negativo")
    title = (
        PaymentTitle.query
        .filter(PaymentTitle.order_id == order.id, PaymentTitle.status != TITLE_CANCELED)
        .populate_existing()
        .with_for_update()
        .first()
    )
    return _confirm(order, title, "admin", actor=actor, ip=ip,
                    paid_amount_cents=paid_amount_cents, notes=notes or "", manual=True)


def sandbox_mark_paid(actor, *, order_nsu: Optional[str] = None, provider_title_id: Optional[str] = None,
                      ip: Optional[str] = None) -> ReconcileResult:
    _require_admin(actor)
    config = load_config()
    if config is None or not config.is_sandbox:
        raise ValidationError("Sandbox desativado")
    if not order_nsu and not provider_title_id:
        raise ValidationError("Informe order_nsu ou provider_title_id")
    event = WebhookEvent(CONFIRMED, provider_title_id=provider_title_id or None,
                         order_reference=order_nsu or None, source="sandbox")
    return apply_event(event, actor=actor, ip=ip)
