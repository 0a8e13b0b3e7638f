# cobranca_app/errors.py
# -*- coding: utf-8 -*-
from __future__ import annotations
from flask import jsonify, current_app
from sqlalchemy.exc import SQLAlchemyError

import boleto


class BoletoError(Exception):
    """Base dos erros do domínio; public_message é seguro para o cliente."""
    status_code = 500
    public_message = "Erro inesperado"

    def __init__(self, message: str | None = None, *, public_message: str | None = None):
        super().__init__(message or self.public_message)
        if public_message is not None:
            self.public_message = public_message
        elif message and self.status_code < 500:
            # erros de entrada/autorização podem expor a mensagem
            self.public_message = message


class ValidationError(BoletoError):
    status_code = 400
    public_message = "Dados inválidos"


class RateLimited(BoletoError):
    status_code = 429
    public_message = "Muitas tentativas. Aguarde alguns instantes."


class ConfigMissing(BoletoError):
    status_code = 409
    public_message = "Boleto não configurado pela loja"


class ConfigInvalid(BoletoError):
    status_code = 409
    public_message = "Configuração de boleto incompleta"


class EncodingError(BoletoError):
    status_code = 500
    public_message = "Não foi possível gerar o boleto"


class ProviderNotConfigured(BoletoError):
    status_code = 503
    public_message = "Provedor de boleto não configurado"


class ProviderError(BoletoError):
    status_code = 502
    public_message = "Falha no provedor de boleto"


class TitleNotFound(BoletoError):
    status_code = 404
    public_message = "Título não encontrado"


class OrderNotFound(BoletoError):
    status_code = 404
    public_message = "Pedido não encontrado"


class OrderStateConflict(BoletoError):
    status_code = 409
    public_message = "Pedido em estado incompatível"


class Unauthorized(BoletoError):
    status_code = 401
    public_message = "Não autorizado"


class Forbidden(Unauthorized):
    status_code = 403
    public_message = "Acesso negado - apenas administradores"


def _boleto_error(e: BoletoError):
    if e.status_code >= 500:
        current_app.logger.exception("Erro %s: %s", type(e).__name__, e)
    else:
        current_app.logger.info("Requisição recusada (%s): %s", type(e).__name__, e)
    return jsonify(error=e.public_message), e.status_code


def _encoding_error(e: boleto.EncodingError):
    return _boleto_error(EncodingError(str(e)))


def _db_error(e: SQLAlchemyError):
    current_app.logger.exception("Erro de persistência")
    return jsonify(error="Erro ao processar a requisição"), 500


def register_error_handlers(app):
    app.register_error_handler(BoletoError, _boleto_error)
    app.register_error_handler(boleto.EncodingError, _encoding_error)
    app.register_error_handler(SQLAlchemyError, _db_error)
