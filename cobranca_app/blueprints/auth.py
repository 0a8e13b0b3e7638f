# cobranca_app/blueprints/auth.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from flask import Blueprint, request, session, jsonify, current_app

from ..decorators import current_principal
from ..errors import Unauthorized, ValidationError
from ..models import User

bp = Blueprint("auth", __name__)


@bp.route("/login", methods=["POST"])
def login():
    data = request.get_json(silent=True) or request.form
    email = (data.get("email") or "").strip().lower()
    pwd = data.get("password") or ""
    if not email or not pwd:
        raise ValidationError("Informe e-mail e senha.")

    u = User.query.filter_by(email=email).first()
    if not u or not u.active or not u.check_password(pwd):
        current_app.logger.info("Login recusado para %s", email)
        raise Unauthorized("Credenciais inválidas.")

    session.clear()
    session["user"] = {"id": u.id, "email": u.email, "is_admin": bool(u.is_admin)}
    return jsonify(success=True, user={"id": u.id, "name": u.name, "email": u.email, "is_admin": bool(u.is_admin)})


@bp.route("/logout", methods=["POST"])
def logout():
    session.clear()
    return jsonify(success=True)


@bp.route("/me")
def me():
    u = current_principal()
    if u is None:
        raise Unauthorized("Faça login para acessar.")
    return jsonify(id=u.id, name=u.name, email=u.email, is_admin=bool(u.is_admin))
