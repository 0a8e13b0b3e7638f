# cobranca_app/blueprints/webhooks.py
# -*- coding: utf-8 -*-
from __future__ import annotations
import hmac

from flask import Blueprint, request, jsonify, current_app

from ..errors import Unauthorized, ValidationError
from ..services import reconciler
from ..services.settings import RegisteredConfig, load_config

bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")


def _same(given: str, expected: str) -> bool:
    if not given or not expected:
        return False
    return hmac.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


def _boleto_secret() -> str:
    cfg = load_config()
    if cfg is not None and isinstance(cfg.settings, RegisteredConfig) and cfg.settings.credentials.webhook_secret:
        return cfg.settings.credentials.webhook_secret
    return current_app.config.get("BOLETO_WEBHOOK_SECRET") or ""


def _json():
    payload = request.get_json(silent=True)
    if payload is None:
        raise ValidationError("Invalid JSON")
    return payload


@bp.route("/boleto", methods=["POST"])
def boleto_webhook():
    if not _same(request.headers.get("X-Webhook-Secret", ""), _boleto_secret()):
        current_app.logger.warning("Webhook de boleto com segredo inválido (ip=%s)", request.remote_addr)
        raise Unauthorized("Unauthorized")
    event = reconciler.parse_boleto_webhook(_json())
    if event is None:
        return jsonify(success=True, outcome=reconciler.OUTCOME_IGNORED)
    result = reconciler.apply_event(event, ip=request.remote_addr)
    return jsonify(result.to_dict())


@bp.route("/asaas", methods=["POST"])
def asaas_webhook():
    token = (
        request.headers.get("asaas-access-token")
        or request.headers.get("X-Webhook-Token")
        or request.args.get("token", "")
    )
    if not _same(token, current_app.config.get("ASAAS_WEBHOOK_TOKEN") or ""):
        current_app.logger.warning("Webhook do Asaas com token inválido (ip=%s)", request.remote_addr)
        raise Unauthorized("Unauthorized webhook")
    event = reconciler.parse_asaas_webhook(_json())
    if event is None:
        return jsonify(success=True, outcome=reconciler.OUTCOME_IGNORED)
    result = reconciler.apply_event(event, ip=request.remote_addr)
    return jsonify(result.to_dict())
