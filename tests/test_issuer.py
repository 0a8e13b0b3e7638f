# tests/test_issuer.py
import os
from datetime import date, timedelta

import pytest
from sqlalchemy.exc import IntegrityError

import boleto
from cobranca_app.errors import (
    ConfigInvalid, ConfigMissing, OrderNotFound, OrderStateConflict, ProviderError, ProviderNotConfigured, RateLimited,
)
from cobranca_app.models import NotificationOutbox, Order, PaymentTitle
from cobranca_app.models.order import STATUS_ISSUED, STATUS_PAID
from cobranca_app.services import issuer
from cobranca_app.services.admission import validate_checkout
from cobranca_app.services.providers import AsaasProvider, ProviderTitle
from cobranca_app.services.settings import get_active_config, set_enabled
from conftest import checkout_payload


def test_new_order_nsu_format():
    nsu = issuer.new_order_nsu()
    prefix, ms, suffix = nsu.split("_")
    assert prefix == "BOL" and ms.isdigit() and len(suffix) == 6
    assert issuer.new_order_nsu() != nsu


def test_create_order_totals_and_snapshot(db_session):
    req = validate_checkout(checkout_payload(coupon={"code": "DESC", "discountAmount": 2.3}))
    order = issuer.create_order(req)
    # 19.90*2 + 12.50 - 2.30
    assert order.total_amount_cents == 3980 + 1250 - 230
    assert order.discount_cents == 230
    assert order.items[0] == {"id": "p1", "name": "Pimenta do reino 100g", "quantity": 2, "price_cents": 1990}
    assert order.status == "pending_boleto"


def test_total_is_clamped_at_zero(db_session):
    req = validate_checkout(checkout_payload(coupon={"code": "TUDO", "discountAmount": 9999}))
    assert issuer.create_order(req).total_amount_cents == 0


def test_order_snapshot_is_immutable(db_session, make_order):
    order = make_order()
    with pytest.raises(ValueError):
        order.total_amount_cents = 1


def test_manual_issue_scenario_a(db_session, boleto_manual, make_order):
    order = make_order(order_nsu="BOL_1700000000_abc123", total_amount_cents=12345)
    title = issuer.issue(order, get_active_config())
    due = date.today() + timedelta(days=3)
    expected = boleto.encode("001", "0001", "000000", 12345, due, "BOL_1700000000_abc123")
    assert title.linha_digitavel == expected.linha_digitavel
    assert title.barcode == expected.barcode
    assert title.due_date == due
    assert title.provider == "manual" and title.mode == "manual"
    assert title.document_ref == "boleto/BOL_1700000000_abc123.pdf"
    assert os.path.exists(issuer.document_path(title.document_ref))
    assert order.status == STATUS_ISSUED


def test_issue_is_idempotent(db_session, boleto_manual, make_order):
    order = make_order()
    cfg = get_active_config()
    first = issuer.issue(order, cfg)
    second = issuer.issue(order, cfg)
    assert first.id == second.id
    assert PaymentTitle.query.filter_by(order_id=order.id).count() == 1
    # notificações só na primeira emissão (e-mail + whatsapp)
    assert NotificationOutbox.query.count() == 2


def test_concurrent_insert_returns_winner(db_session, boleto_manual, make_order, monkeypatch):
    order = make_order()
    cfg = get_active_config()
    winner = issuer.issue(order, cfg)
    order_id = order.id

    # simula a outra requisição: a busca inicial não enxerga o título já gravado
    real = issuer.active_title
    calls = {"n": 0}

    def _blind(order_id, lock=False):
        calls["n"] += 1
        return None if calls["n"] == 1 else real(order_id, lock=lock)

    monkeypatch.setattr(issuer, "active_title", _blind)
    got = issuer.issue(db_session.get(Order, order_id), cfg)
    assert got.id == winner.id
    assert PaymentTitle.query.filter_by(order_id=order_id).count() == 1


def test_issue_locks_order_before_title(db_session, boleto_manual, make_order, monkeypatch):
    seen = []
    real_lock, real_active = Order.lock, issuer.active_title

    def _lock(order_id):
        seen.append("order")
        return real_lock(order_id)

    def _active(order_id, lock=False):
        seen.append("title")
        return real_active(order_id, lock=lock)

    monkeypatch.setattr(Order, "lock", _lock)
    monkeypatch.setattr(issuer, "active_title", _active)
    issuer.issue(make_order(), get_active_config())
    assert seen[:2] == ["order", "title"]


def test_concurrent_provider_issue_cancels_duplicate_charge(db_session, boleto_production, make_order, monkeypatch):
    created, cancelled = [], []

    def _create(self, order, amount_cents, due_date):
        pid = f"pay_{len(created)}"
        created.append(pid)
        return ProviderTitle(pid, "1" * 47, "2" * 44)

    def _cancel(self, provider_title_id):
        cancelled.append(provider_title_id)

    monkeypatch.setattr(AsaasProvider, "create_title", _create)
    monkeypatch.setattr(AsaasProvider, "cancel_title", _cancel)
    order = make_order()
    cfg = get_active_config()
    winner = issuer.issue(order, cfg)
    order_id = order.id

    real = issuer.active_title
    calls = {"n": 0}

    def _blind(order_id, lock=False):
        calls["n"] += 1
        return None if calls["n"] == 1 else real(order_id, lock=lock)

    monkeypatch.setattr(issuer, "active_title", _blind)
    got = issuer.issue(db_session.get(Order, order_id), cfg)
    assert got.provider_title_id == winner.provider_title_id == "pay_0"
    assert created == ["pay_0", "pay_1"]
    assert cancelled == ["pay_1"]
    assert PaymentTitle.query.filter_by(order_id=order_id).count() == 1


def test_duplicate_charge_cancel_failure_is_logged(db_session, boleto_production, monkeypatch, caplog):
    def _cancel(self, provider_title_id):
        raise ProviderError("Asaas fora do ar")

    monkeypatch.setattr(AsaasProvider, "cancel_title", _cancel)
    with caplog.at_level("ERROR"):
        issuer._release_orphan(get_active_config(), "asaas", "pay_9")
    assert "pay_9" in caplog.text
    # títulos locais não existem no provedor
    issuer._release_orphan(get_active_config(), "sandbox", "sandbox_x")


def test_render_failure_degrades_to_no_document(db_session, boleto_manual, make_order, monkeypatch):
    def _boom(*a, **k):
        raise RuntimeError("reportlab quebrou")
    monkeypatch.setattr(issuer.boleto_report, "gerar_pdf_boleto", _boom)
    title = issuer.issue(make_order(), get_active_config())
    assert title.status == "issued"
    assert title.document_ref is None


def test_sandbox_issue_scenario_b(db_session, boleto_sandbox, make_order, http_calls):
    order = make_order()
    title = issuer.issue(order, get_active_config())
    assert title.provider_title_id == f"sandbox_{order.order_nsu}"
    assert title.provider == "sandbox"
    assert boleto.verify(title.linha_digitavel)
    assert title.linha_digitavel.startswith("0019")   # banco placeholder 001
    assert title.document_ref is None
    assert http_calls == []


def test_production_without_credentials(app, db_session, boleto_production, make_order, monkeypatch):
    cfg = get_active_config()
    monkeypatch.setitem(app.config, "ASAAS_ACCESS_TOKEN", "")
    from dataclasses import replace
    creds = replace(cfg.settings.credentials, client_secret="")
    cfg = replace(cfg, settings=replace(cfg.settings, credentials=creds))
    order = make_order()
    with pytest.raises(ProviderNotConfigured):
        issuer.issue(order, cfg)
    assert PaymentTitle.query.filter_by(order_id=order.id).count() == 0


def test_production_uses_provider(db_session, boleto_production, make_order, monkeypatch):
    def _create(self, order, amount_cents, due_date):
        assert amount_cents == order.total_amount_cents
        return ProviderTitle("pay_123", "1" * 47, "2" * 44, None, "https://asaas.test/boleto/pay_123")
    monkeypatch.setattr(AsaasProvider, "create_title", _create)
    title = issuer.issue(make_order(), get_active_config())
    assert title.provider == "asaas"
    assert title.provider_title_id == "pay_123"
    assert title.boleto_url == "https://asaas.test/boleto/pay_123"


def test_production_provider_failure_keeps_order_pending(db_session, boleto_production, make_order, monkeypatch):
    def _fail(self, *a, **k):
        raise ProviderError("timeout")
    monkeypatch.setattr(AsaasProvider, "create_title", _fail)
    order = make_order()
    with pytest.raises(ProviderError):
        issuer.issue(order, get_active_config())
    db_session.rollback()
    assert db_session.get(Order, order.id).status == "pending_boleto"
    assert PaymentTitle.query.count() == 0


def test_issue_rejects_paid_order_without_title(db_session, boleto_manual, make_order):
    order = make_order(status=STATUS_PAID)
    with pytest.raises(OrderStateConflict):
        issuer.issue(order, get_active_config())


def test_submit_checkout_full_flow(db_session, boleto_manual):
    resp = issuer.submit_checkout(checkout_payload(email="fluxo@example.com"))
    assert resp["success"] is True
    assert resp["totalAmount"] == 52.3
    assert resp["boletoData"]["bankCode"] == "001"
    assert resp["boletoData"]["accountType"] == "corrente"
    assert len(resp["linhaDigitavel"]) == 47
    assert resp["documentRef"].startswith("boleto/")
    order = Order.query.filter_by(order_nsu=resp["orderNsu"]).one()
    assert order.status == STATUS_ISSUED
    assert resp["paymentTitleId"] == order.payment_titles.one().id


def test_submit_checkout_without_config(db_session):
    with pytest.raises(ConfigMissing):
        issuer.submit_checkout(checkout_payload())
    assert Order.query.count() == 0


def test_submit_checkout_disabled(db_session, boleto_manual):
    set_enabled(False)
    with pytest.raises(ConfigInvalid):
        issuer.submit_checkout(checkout_payload())


def test_submit_checkout_rate_limited_has_no_side_effects(app, db_session, boleto_manual):
    payload = checkout_payload(email="rapido@example.com")
    for _ in range(app.config["BOLETO_RATE_LIMIT"]):
        issuer.submit_checkout(payload)
    before = Order.query.count()
    with pytest.raises(RateLimited):
        issuer.submit_checkout(payload)
    assert Order.query.count() == before


def test_retry_issue(db_session, boleto_manual, make_order):
    order = make_order()
    first = issuer.retry_issue(order.order_nsu)
    again = issuer.retry_issue(order.order_nsu)
    assert first["paymentTitleId"] == again["paymentTitleId"]
    with pytest.raises(OrderNotFound):
        issuer.retry_issue("BOL_0_nada00")


def test_sample_document_only_in_sandbox(db_session, boleto_sandbox, boleto_production):
    out = issuer.sample_document(boleto_sandbox)
    t = out["test_title"]
    assert t["amount_cents"] == 12345
    assert t["pdf_url"].startswith("data:application/pdf;base64,")
    assert boleto.verify(t["linha_digitavel"])
    from cobranca_app.errors import ValidationError
    with pytest.raises(ValidationError):
        issuer.sample_document(boleto_production)
