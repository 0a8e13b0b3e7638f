# cobranca_app/services/notifications.py
# -*- coding: utf-8 -*-
"""
Outbox de notificações (e-mail via Resend, WhatsApp via Z-API).

As linhas entram na mesma transação que muda o pedido; o envio acontece
depois, num job do APScheduler, com retentativa e backoff exponencial.
Falha de envio nunca volta para quem mudou o pedido.
"""
from __future__ import annotations
import json
from datetime import datetime, timedelta
from typing import Any, Dict, List

import requests
from flask import current_app

from boleto_report import format_brl
from ..extensions import db, scheduler
from ..models import NotificationOutbox

RESEND_URL = "https://api.resend.com/emails"
ZAPI_URL = "https://api.z-api.io/instances/{instance}/token/{token}/send-text"

EVENT_BOLETO_ISSUED = "boleto_issued"
EVENT_ORDER_PAID = "order_paid"
EVENT_ORDER_CANCELLED = "order_cancelled"

STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"

DISPATCH_JOB_ID = "notifications_dispatch"
KICK_JOB_ID = "notifications_kick"


class ChannelNotConfigured(RuntimeError):
    pass


def enqueue(channel: str, event: str, payload: Dict[str, Any]) -> NotificationOutbox:
    """Adiciona na sessão atual; quem chama faz o commit."""
    row = NotificationOutbox(
        channel=channel,
        event=event,
        payload_json=json.dumps(payload, ensure_ascii=False, default=str),
        status=STATUS_PENDING,
        attempts=0,
        next_attempt_at=datetime.utcnow(),
    )
    db.session.add(row)
    return row


def notify_order(order, event: str, **extra) -> List[NotificationOutbox]:
    payload = {
        "order_nsu": order.order_nsu,
        "customer_name": order.customer_name,
        "customer_email": order.customer_email,
        "customer_phone": order.customer_phone,
        "total_amount_cents": order.total_amount_cents,
        "status": order.status,
        "items": order.items,
    }
    payload.update(extra)

    recipients = [order.customer_email]
    admin_email = current_app.config.get("STORE_ADMIN_EMAIL")
    if event == EVENT_ORDER_PAID and admin_email:
        recipients.append(admin_email)
    return [
        enqueue("email", event, dict(payload, to=recipients)),
        enqueue("whatsapp", event, payload),
    ]


# ---------------------------------------------------------------------
# Canais
# ---------------------------------------------------------------------
SUBJECTS = {
    EVENT_BOLETO_ISSUED: "Seu boleto - Pedido #{order_nsu}",
    EVENT_ORDER_PAID: "Pagamento confirmado - Pedido #{order_nsu}",
    EVENT_ORDER_CANCELLED: "Pedido #{order_nsu} cancelado",
}


def _email_html(event: str, p: Dict[str, Any]) -> str:
    lines = [
        f"<p>Olá, {p.get('customer_name') or 'cliente'}!</p>",
        f"<p>Pedido <b>#{p.get('order_nsu')}</b> - total {format_brl(p.get('total_amount_cents'))}.</p>",
    ]
    if event == EVENT_BOLETO_ISSUED:
        lines.append(f"<p>Vencimento: {p.get('due_date') or '-'}</p>")
        lines.append(f"<p>Linha digitável: <code>{p.get('linha_digitavel') or '-'}</code></p>")
        if p.get("boleto_url"):
            lines.append(f"<p><a href=\"{p['boleto_url']}\">Abrir boleto</a></p>")
    elif event == EVENT_ORDER_PAID:
        lines.append("<p>Recebemos o seu pagamento. Obrigado!</p>")
    elif event == EVENT_ORDER_CANCELLED:
        lines.append("<p>O boleto venceu ou foi cancelado.</p>")
    return "\n".join(lines)


def send_email(event: str, payload: Dict[str, Any]) -> None:
    api_key = current_app.config.get("RESEND_API_KEY")
    if not api_key:
        raise ChannelNotConfigured("RESEND_API_KEY não configurada")
    to = [e for e in (payload.get("to") or [payload.get("customer_email")]) if e]
    if not to:
        raise ChannelNotConfigured("notificação sem destinatário")
    r = requests.post(
        RESEND_URL,
        headers={"Authorization": f"Bearer {api_key}"},
        json={
            "from": current_app.config.get("MAIL_FROM"),
            "to": to,
            "subject": SUBJECTS.get(event, "Pedido #{order_nsu}").format(order_nsu=payload.get("order_nsu")),
            "html": _email_html(event, payload),
        },
        timeout=15,
    )
    r.raise_for_status()


def _whatsapp_message(event: str, p: Dict[str, Any]) -> str:
    title = {
        EVENT_BOLETO_ISSUED: "*NOVO PEDIDO (BOLETO)*",
        EVENT_ORDER_PAID: "*PAGAMENTO CONFIRMADO*",
        EVENT_ORDER_CANCELLED: "*PEDIDO CANCELADO*",
    }.get(event, f"*{event}*")
    items = "\n".join(
        f"  • {i.get('quantity')}x {i.get('name')} - {format_brl(i.get('price_cents'))}"
        for i in (p.get("items") or [])
    )
    return (
        f"{title}\n\n"
        f"NSU: {p.get('order_nsu')}\n"
        f"Cliente: {p.get('customer_name') or 'Não informado'}\n"
        f"Telefone: {p.get('customer_phone') or 'Não informado'}\n"
        f"Status: {p.get('status')}\n\n"
        f"Itens:\n{items}\n\n"
        f"Total: {format_brl(p.get('total_amount_cents'))}"
    )


def send_whatsapp(event: str, payload: Dict[str, Any]) -> None:
    cfg = current_app.config
    instance, token, phone = cfg.get("ZAPI_INSTANCE_ID"), cfg.get("ZAPI_TOKEN"), cfg.get("ADMIN_WHATSAPP_PHONE")
    if not (instance and token and phone):
        raise ChannelNotConfigured("Z-API não configurada")
    r = requests.post(
        ZAPI_URL.format(instance=instance, token=token),
        json={"phone": phone, "message": _whatsapp_message(event, payload)},
        timeout=15,
    )
    r.raise_for_status()


SENDERS = {
    "email": send_email,
    "whatsapp": send_whatsapp,
}


# ---------------------------------------------------------------------
# Despacho
# ---------------------------------------------------------------------
def _schedule_retry(row: NotificationOutbox, error: str) -> None:
    cfg = current_app.config
    row.attempts = (row.attempts or 0) + 1
    row.last_error = error[:2000]
    if row.attempts >= int(cfg.get("NOTIFY_MAX_ATTEMPTS", 5)):
        row.status = STATUS_FAILED
        return
    base = int(cfg.get("NOTIFY_BACKOFF_SECONDS", 30))
    row.next_attempt_at = datetime.utcnow() + timedelta(seconds=base * 2 ** row.attempts)


def dispatch_pending(limit: int = 50) -> int:
    """Uma passada pelo outbox. Devolve quantas foram enviadas."""
    now = datetime.utcnow()
    rows = (
        NotificationOutbox.query
        .filter(NotificationOutbox.status == STATUS_PENDING, NotificationOutbox.next_attempt_at <= now)
        .order_by(NotificationOutbox.id)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .all()
    )
    sent = 0
    for row in rows:
        sender = SENDERS.get(row.channel)
        try:
            if sender is None:
                raise ChannelNotConfigured(f"canal desconhecido: {row.channel}")
            sender(row.event, row.payload)
        except ChannelNotConfigured as e:
            current_app.logger.warning("Notificação %s (%s) descartada: %s", row.id, row.channel, e)
            row.attempts = (row.attempts or 0) + 1
            row.last_error = str(e)
            row.status = STATUS_FAILED
        except (requests.RequestException, ValueError) as e:
            current_app.logger.warning("Falha ao enviar notificação %s (%s): %s", row.id, row.channel, e)
            _schedule_retry(row, str(e))
        else:
            row.status = STATUS_SENT
            row.sent_at = datetime.utcnow()
            row.attempts = (row.attempts or 0) + 1
            sent += 1
    db.session.commit()
    return sent


def _dispatch_job(app):
    with app.app_context():
        try:
            dispatch_pending()
        except Exception:
            db.session.rollback()
            app.logger.exception("Job de notificações falhou")


def init_scheduler_jobs(app) -> None:
    scheduler.add_job(
        _dispatch_job,
        "interval",
        seconds=int(app.config.get("NOTIFY_INTERVAL_SECONDS", 30)),
        args=[app],
        id=DISPATCH_JOB_ID,
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )


def kick() -> None:
    """Despacho imediato fora da requisição (se o scheduler estiver rodando)."""
    if not scheduler.running:
        return
    app = current_app._get_current_object()
    scheduler.add_job(_dispatch_job, args=[app], id=KICK_JOB_ID, replace_existing=True)
