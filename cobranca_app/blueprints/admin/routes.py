# cobranca_app/blueprints/admin/routes.py
# -*- coding: utf-8 -*-
from __future__ import annotations
from decimal import Decimal, InvalidOperation

from flask import request, jsonify, current_app

from ..admin import admin_bp
from ...decorators import admin_required, current_principal
from ...errors import ConfigInvalid, ConfigMissing, ValidationError
from ...models import Order
from ...services import issuer, reconciler
from ...services.settings import get_active_config, load_config, redact, save_config, set_enabled


def _to_cents(v) -> int | None:
    if v is None or v == "":
        return None
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return int((Decimal(str(v)) * 100).to_integral_value())
    s = str(v).strip()
    if "," in s:
        s = s.replace(".", "").replace(",", ".")
    try:
        return int((Decimal(s) * 100).to_integral_value())
    except InvalidOperation:
        raise ValidationError(f"Valor inválido: {v!r}")


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        data = request.form.to_dict()
    if not isinstance(data, dict):
        raise ValidationError("Payload inválido")
    return data


# ---------------------------------------------------------------------
# Configuração do boleto
# ---------------------------------------------------------------------
@admin_bp.route("/boleto/settings", methods=["GET"])
@admin_required
def boleto_settings():
    return jsonify(settings=redact(load_config()))


@admin_bp.route("/boleto/settings", methods=["PUT", "POST"])
@admin_required
def boleto_settings_save():
    data = _body()
    # a tela antiga manda {"value": {...}}
    payload = data.get("value") if isinstance(data.get("value"), dict) else data
    cfg = save_config(payload)
    actor = current_principal()
    current_app.logger.info("Configuração de boleto alterada por %s", actor.email)
    return jsonify(success=True, settings=redact(cfg))


@admin_bp.route("/boleto/settings/enabled", methods=["POST"])
@admin_required
def boleto_settings_enabled():
    data = _body()
    if "enabled" not in data:
        raise ValidationError("Informe enabled")
    enabled = data["enabled"]
    if isinstance(enabled, str):
        enabled = enabled.strip().lower() in ("1", "true", "on", "sim")
    return jsonify(success=True, settings=redact(set_enabled(bool(enabled))))


@admin_bp.route("/boleto/test", methods=["POST"])
@admin_required
def boleto_test():
    cfg = load_config()
    if cfg is None:
        raise ConfigMissing("Sem configurações")
    return jsonify(issuer.sample_document(cfg))


@admin_bp.route("/boleto/sandbox/mark-paid", methods=["POST"])
@admin_required
def boleto_sandbox_mark_paid():
    data = _body()
    result = reconciler.sandbox_mark_paid(
        current_principal(),
        order_nsu=(data.get("order_nsu") or "").strip() or None,
        provider_title_id=(data.get("provider_title_id") or "").strip() or None,
        ip=request.remote_addr,
    )
    return jsonify(result.to_dict())


# ---------------------------------------------------------------------
# Pedidos
# ---------------------------------------------------------------------
@admin_bp.route("/orders", methods=["GET"])
@admin_required
def orders():
    page = max(1, request.args.get("page", 1, type=int))
    limit = min(200, max(1, request.args.get("limit", 50, type=int)))
    q = Order.query
    status = request.args.get("status")
    if status:
        q = q.filter(Order.status == status)
    total = q.count()
    rows = q.order_by(Order.created_at.desc(), Order.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return jsonify(
        items=[dict(o.to_dict(), titles=[t.to_dict() for t in o.payment_titles]) for o in rows],
        page=page, limit=limit, total=total,
    )


@admin_bp.route("/orders/<int:order_id>/confirm-payment", methods=["POST"])
@admin_required
def confirm_payment(order_id: int):
    data = _body()
    result = reconciler.confirm_manual(
        order_id,
        current_principal(),
        paid_amount_cents=_to_cents(data.get("paid_amount")),
        notes=(data.get("notes") or "").strip(),
        ip=request.remote_addr,
    )
    return jsonify(result.to_dict())


@admin_bp.route("/audit-logs", methods=["GET"])
@admin_required
def audit_logs():
    return jsonify(reconciler.list_audit_logs(
        order_id=request.args.get("order_id", type=int),
        page=request.args.get("page", 1, type=int),
        limit=request.args.get("limit", 50, type=int),
    ))


@admin_bp.route("/boleto/status", methods=["GET"])
@admin_required
def boleto_status():
    """Diagnóstico rápido: a configuração atual serve para emitir?"""
    try:
        cfg = get_active_config()
    except (ConfigMissing, ConfigInvalid, ValidationError) as e:
        return jsonify(ready=False, error=e.public_message)
    return jsonify(ready=cfg.enabled, mode=cfg.mode, environment=cfg.environment, version=cfg.version)
