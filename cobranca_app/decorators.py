# cobranca_app/decorators.py
# -*- coding: utf-8 -*-
from __future__ import annotations
from functools import wraps
from flask import session

from .errors import Unauthorized, Forbidden


def current_principal():
    """Usuário da sessão (ou None). Usuários inativos não contam como sessão válida."""
    data = session.get("user")
    if not data or not data.get("id"):
        return None
    from .extensions import db
    from .models.user import User
    u = db.session.get(User, data["id"])
    if not u or not u.active:
        return None
    return u


def login_required(view_func):
    @wraps(view_func)
    def wrapper(*args, **kwargs):
        if current_principal() is None:
            raise Unauthorized("Faça login para acessar.")
        return view_func(*args, **kwargs)
    return wrapper

def admin_required(view_func):
    @wraps(view_func)
    def wrapper(*args, **kwargs):
        user = current_principal()
        if user is None:
            raise Unauthorized("Faça login para acessar.")
        if not user.is_admin:
            raise Forbidden("Acesso restrito ao administrador.")
        return view_func(*args, **kwargs)
    return wrapper
