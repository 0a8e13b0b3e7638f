# cobranca_app/services/issuer.py
# -*- coding: utf-8 -*-
"""
Emissão do título (boleto) de um pedido.

issue() é idempotente por pedido: existe no máximo um título não cancelado
por order_id (índice único parcial). Uma corrida entre duas emissões é
resolvida pelo banco: quem perde faz rollback e devolve o título vencedor.
"""
from __future__ import annotations
import base64
import json
import os
import secrets
import string
import time
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

import boleto
import boleto_report
from ..extensions import db
from ..models import Order, PaymentTitle
from ..models.order import STATUS_PENDING, STATUS_ISSUED, STATUS_PAID, STATUS_CANCELLED
from ..models.payment_title import TITLE_CANCELED, TITLE_ISSUED
from ..errors import (
    ConfigInvalid, OrderNotFound, OrderStateConflict, ProviderError, ProviderNotConfigured, ValidationError,
)
from .admission import CheckoutRequest, admit
from .settings import (
    BoletoConfiguration, ManualConfig, RegisteredConfig, get_active_config,
)
from .providers import get_provider
from . import notifications

_BASE36 = string.digits + string.ascii_lowercase

# placeholders do sandbox quando o bloco bancário do registrado está vazio
SANDBOX_BANK_CODE = "001"
SANDBOX_BANK_NAME = "Banco do Brasil"
SANDBOX_AGENCY = "0001"
SANDBOX_ACCOUNT = "000000"

TEST_AMOUNT_CENTS = 12345


def _cents(value) -> int:
    return int((Decimal(str(value)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def new_order_nsu() -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"BOL_{int(time.time() * 1000)}_{suffix}"


def create_order(req: CheckoutRequest) -> Order:
    items = [
        {
            "id": str(it.id),
            "name": it.name,
            "quantity": it.quantity,
            "price_cents": _cents(it.price),
        }
        for it in req.items
    ]
    subtotal = sum(_cents(Decimal(str(it.price)) * it.quantity) for it in req.items)
    discount = _cents(req.coupon.discount_amount) if req.coupon else 0
    order = Order(
        order_nsu=new_order_nsu(),
        customer_name=req.customer.name[:100],
        customer_email=req.customer.email[:255],
        customer_phone=(req.customer.phone or "")[:20] or None,
        customer_cpf=(req.customer.cpf or "")[:20] or None,
        items_json=json.dumps(items, ensure_ascii=False),
        coupon_code=req.coupon.code if req.coupon else None,
        discount_cents=discount,
        total_amount_cents=max(0, subtotal - discount),
        payment_method="boleto",
        status=STATUS_PENDING,
    )
    db.session.add(order)
    db.session.commit()
    current_app.logger.info("Pedido boleto %s criado (total=%s)", order.order_nsu, order.total_amount_cents)
    return order


def active_title(order_id: int, lock: bool = False) -> Optional[PaymentTitle]:
    q = PaymentTitle.query.filter(PaymentTitle.order_id == order_id, PaymentTitle.status != TITLE_CANCELED)
    if lock:
        q = q.with_for_update()
    return q.first()


def due_date_for(config: BoletoConfiguration, today: Optional[date] = None) -> date:
    return (today or date.today()) + timedelta(days=config.billing.days_to_expire)


# ---------------------------------------------------------------------
# Documento (PDF) do boleto manual
# ---------------------------------------------------------------------
def document_path(document_ref: str) -> str:
    return os.path.join(current_app.config["BOLETO_DOCS_FOLDER"], document_ref)


def render_document(order: Order, title: PaymentTitle, config: BoletoConfiguration) -> Optional[str]:
    """Gera e grava o PDF; devolve o document_ref ou None se a renderização falhar."""
    bank = config.bank
    fields = boleto_report.document_fields(
        beneficiary_name=bank.beneficiary_name,
        beneficiary_document=bank.beneficiary_document,
        bank_code=bank.code,
        bank_name=bank.name,
        agency=bank.agency,
        account=bank.account,
        due_date=title.due_date,
        amount_cents=title.amount_cents,
        linha_digitavel=title.linha_digitavel,
        instructions=config.billing.instructions,
        order_nsu=order.order_nsu,
        customer_name=order.customer_name,
    )
    ref = f"boleto/{order.order_nsu}.pdf"
    try:
        pdf = boleto_report.gerar_pdf_boleto(fields, title.barcode)
        path = document_path(ref)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(pdf)
    except Exception:
        # título segue válido sem o PDF
        current_app.logger.exception("Falha ao renderizar o boleto de %s", order.order_nsu)
        return None
    return ref


# ---------------------------------------------------------------------
# Construção do título por modo
# ---------------------------------------------------------------------
def _manual_title(order: Order, config: BoletoConfiguration, due: date) -> PaymentTitle:
    bank = config.bank
    codigo = boleto.encode(bank.code, bank.agency, bank.account, order.total_amount_cents, due, order.order_nsu)
    title = PaymentTitle(
        order_id=order.id,
        method="boleto",
        mode=config.mode,
        provider="manual",
        status=TITLE_ISSUED,
        amount_cents=order.total_amount_cents,
        due_date=due,
        linha_digitavel=codigo.linha_digitavel,
        barcode=codigo.barcode,
    )
    title.document_ref = render_document(order, title, config)
    return title


def sandbox_codigo(config: BoletoConfiguration, amount_cents: int, due: date, reference: str) -> boleto.CodigoBoleto:
    bank = config.bank
    return boleto.encode(
        bank.code or SANDBOX_BANK_CODE,
        bank.agency or SANDBOX_AGENCY,
        bank.account or SANDBOX_ACCOUNT,
        amount_cents,
        due,
        reference,
    )


def _sandbox_title(order: Order, config: BoletoConfiguration, due: date) -> PaymentTitle:
    codigo = sandbox_codigo(config, order.total_amount_cents, due, order.order_nsu)
    return PaymentTitle(
        order_id=order.id,
        method="boleto",
        mode=config.mode,
        provider="sandbox",
        provider_title_id=f"sandbox_{order.order_nsu}",
        status=TITLE_ISSUED,
        amount_cents=order.total_amount_cents,
        due_date=due,
        linha_digitavel=codigo.linha_digitavel,
        barcode=codigo.barcode,
        document_ref=None,
    )


def _provider_title(order: Order, config: BoletoConfiguration, due: date) -> PaymentTitle:
    provider = get_provider(config)
    remote = provider.create_title(order, order.total_amount_cents, due)
    if not remote.linha_digitavel:
        raise ProviderError(f"{provider.name} não devolveu a linha digitável de {order.order_nsu}")
    return PaymentTitle(
        order_id=order.id,
        method="boleto",
        mode=config.mode,
        provider=provider.name,
        provider_title_id=remote.provider_title_id,
        status=TITLE_ISSUED,
        amount_cents=order.total_amount_cents,
        due_date=due,
        linha_digitavel=remote.linha_digitavel,
        barcode=remote.barcode,
        document_ref=remote.document_ref,
        boleto_url=remote.boleto_url,
    )


def _build_title(order: Order, config: BoletoConfiguration) -> PaymentTitle:
    due = due_date_for(config)
    s = config.settings
    if isinstance(s, ManualConfig):
        return _manual_title(order, config, due)
    if isinstance(s, RegisteredConfig):
        if config.is_sandbox:
            return _sandbox_title(order, config, due)
        return _provider_title(order, config, due)
    raise TypeError(f"configuração desconhecida: {type(s).__name__}")


def _release_orphan(config: BoletoConfiguration, provider: str, provider_title_id: Optional[str]) -> None:
    """Cancela no provedor a cobrança de quem perdeu a corrida da emissão."""
    if provider in ("manual", "sandbox") or not provider_title_id:
        return
    try:
        get_provider(config).cancel_title(provider_title_id)
    except (ProviderError, ProviderNotConfigured) as e:
        current_app.logger.error(
            "Cobrança órfã %s no provedor %s não foi cancelada: %s", provider_title_id, provider, e,
        )
        return
    current_app.logger.warning("Cobrança duplicada %s cancelada no provedor", provider_title_id)


def issue(order: Order, config: BoletoConfiguration) -> PaymentTitle:
    # pedido travado antes de olhar o título: a segunda emissão espera a primeira
    locked = Order.lock(order.id)
    if locked is None:
        raise OrderNotFound(f"Pedido {order.order_nsu} não encontrado")
    order = locked
    existing = active_title(order.id, lock=True)
    if existing is not None:
        db.session.commit()
        return existing
    if order.status in (STATUS_PAID, STATUS_CANCELLED):
        db.session.rollback()
        raise OrderStateConflict(f"Pedido {order.order_nsu} está {order.status}")

    title = _build_title(order, config)
    db.session.add(title)
    order_id, order_nsu = order.id, order.order_nsu
    remote = (title.provider, title.provider_title_id)
    try:
        db.session.flush()
        order.transition_to(STATUS_ISSUED)
        notifications.notify_order(
            order,
            notifications.EVENT_BOLETO_ISSUED,
            due_date=title.due_date.isoformat(),
            linha_digitavel=title.linha_digitavel,
            boleto_url=title.boleto_url,
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        winner = active_title(order_id)
        if winner is None:
            raise
        current_app.logger.info("Emissão concorrente de %s; usando o título %s", order_nsu, winner.id)
        _release_orphan(config, *remote)
        return winner
    current_app.logger.info(
        "Título %s emitido para %s (modo=%s, provedor=%s)", title.id, order.order_nsu, title.mode, title.provider,
    )
    notifications.kick()
    return title


# ---------------------------------------------------------------------
# Fluxo completo
# ---------------------------------------------------------------------
def _require_enabled(config: BoletoConfiguration) -> BoletoConfiguration:
    if not config.enabled:
        raise ConfigInvalid("Boleto desabilitado", public_message="Boleto indisponível no momento")
    return config


def checkout_response(order: Order, title: PaymentTitle, config: BoletoConfiguration) -> Dict[str, Any]:
    bank = config.bank
    return {
        "success": True,
        "orderNsu": order.order_nsu,
        "totalAmount": order.total_amount_cents / 100,
        "dueDate": title.due_date.isoformat(),
        "boletoData": {
            "bankCode": bank.code,
            "bankName": bank.name,
            "agency": bank.agency,
            "account": bank.account,
            "accountType": bank.account_type,
            "beneficiaryName": bank.beneficiary_name,
            "beneficiaryDocument": bank.beneficiary_document,
            "instructions": config.billing.instructions,
        },
        "linhaDigitavel": title.linha_digitavel,
        "barcode": title.barcode,
        "documentRef": title.document_ref,
        "boletoUrl": title.boleto_url,
        "paymentTitleId": title.id,
    }


def submit_checkout(payload) -> Dict[str, Any]:
    req = admit(payload)
    config = _require_enabled(get_active_config())
    order = create_order(req)
    title = issue(order, config)
    return checkout_response(order, title, config)


def get_order(order_nsu: str) -> Order:
    order = Order.query.filter_by(order_nsu=order_nsu).first()
    if order is None:
        raise OrderNotFound(f"Pedido {order_nsu} não encontrado")
    return order


def retry_issue(order_nsu: str) -> Dict[str, Any]:
    order = get_order(order_nsu)
    config = _require_enabled(get_active_config())
    title = issue(order, config)
    return checkout_response(order, title, config)


def sample_document(config: BoletoConfiguration) -> Dict[str, Any]:
    """Boleto de teste da tela de admin (só em sandbox, nada é gravado)."""
    if not config.is_sandbox:
        raise ValidationError("Teste permitido apenas em homologação")
    stamp = int(time.time() * 1000)
    reference = f"TEST_{stamp}"
    due = due_date_for(config)
    codigo = sandbox_codigo(config, TEST_AMOUNT_CENTS, due, reference)
    bank = config.bank
    fields = boleto_report.document_fields(
        beneficiary_name=bank.beneficiary_name or "Cedente Homologação",
        beneficiary_document=bank.beneficiary_document or "00.000.000/0001-00",
        bank_code=bank.code or SANDBOX_BANK_CODE,
        bank_name=bank.name or SANDBOX_BANK_NAME,
        agency=bank.agency or SANDBOX_AGENCY,
        account=bank.account or SANDBOX_ACCOUNT,
        due_date=due,
        amount_cents=TEST_AMOUNT_CENTS,
        linha_digitavel=codigo.linha_digitavel,
        instructions=config.billing.instructions,
        order_nsu=reference,
    )
    pdf = boleto_report.gerar_pdf_boleto(fields, codigo.barcode, test_banner=boleto_report.TEST_BANNER)
    return {
        "success": True,
        "test_title": {
            "provider_title_id": f"mock_{stamp}",
            "linha_digitavel": codigo.linha_digitavel,
            "barcode": codigo.barcode,
            "due_date": due.isoformat(),
            "amount_cents": TEST_AMOUNT_CENTS,
            "pdf_url": "data:application/pdf;base64," + base64.b64encode(pdf).decode("ascii"),
            "status": TITLE_CANCELED,
            "generated_at": datetime.utcnow().isoformat(),
        },
    }
