# cobranca_app/blueprints/checkout.py
# -*- coding: utf-8 -*-
from __future__ import annotations
import os

from flask import Blueprint, request, jsonify, send_file, current_app

from ..errors import TitleNotFound, ValidationError
from ..models import PaymentTitle
from ..models.payment_title import TITLE_CANCELED
from ..services import issuer
from ..services.settings import load_config, public_view

bp = Blueprint("boleto", __name__, url_prefix="/boleto")


@bp.route("/checkout", methods=["POST"])
def checkout():
    payload = request.get_json(silent=True)
    if payload is None:
        raise ValidationError("Formato de requisição inválido")
    return jsonify(issuer.submit_checkout(payload))


@bp.route("/config")
def config():
    return jsonify(public_view(load_config()))


@bp.route("/orders/<order_nsu>/emitir", methods=["POST"])
def emitir(order_nsu: str):
    return jsonify(issuer.retry_issue(order_nsu))


@bp.route("/<order_nsu>/documento")
def documento(order_nsu: str):
    order = issuer.get_order(order_nsu)
    title = (
        order.payment_titles
        .filter(PaymentTitle.status != TITLE_CANCELED, PaymentTitle.document_ref.isnot(None))
        .first()
    )
    if title is None:
        raise TitleNotFound(f"Pedido {order_nsu} sem documento")
    path = issuer.document_path(title.document_ref)
    if not os.path.exists(path):
        current_app.logger.warning("PDF %s não encontrado em disco", title.document_ref)
        raise TitleNotFound(f"Documento {title.document_ref} ausente")
    return send_file(
        path,
        mimetype="application/pdf",
        as_attachment=False,
        download_name=f"boleto-{order.order_nsu}.pdf",
    )
