# cobranca_app/services/providers.py
# -*- coding: utf-8 -*-
from __future__ import annotations
from dataclasses import dataclass
from datetime import date
from typing import Optional

import requests
from flask import current_app

import boleto
from ..errors import ProviderError, ProviderNotConfigured
from .settings import BoletoConfiguration, RegisteredConfig


@dataclass(frozen=True)
class ProviderTitle:
    provider_title_id: str
    linha_digitavel: str
    barcode: str
    document_ref: Optional[str] = None
    boleto_url: Optional[str] = None


class ProviderAdapter:
    """Registra o título num provedor externo e devolve os dados do boleto."""
    name = ""

    def create_title(self, order, amount_cents: int, due_date: date) -> ProviderTitle:
        raise NotImplementedError

    def cancel_title(self, provider_title_id: str) -> None:
        raise NotImplementedError


class AsaasProvider(ProviderAdapter):
    name = "asaas"

    def __init__(self, base_url: str, access_token: str, timeout: int = 20):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.timeout = timeout

    @property
    def headers(self):
        return {"Content-Type": "application/json", "access_token": self.access_token}

    def _call(self, method: str, path: str, **kwargs):
        url = f"{self.base_url}{path}"
        try:
            r = requests.request(method, url, headers=self.headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise ProviderError(f"Asaas indisponível ({method} {path}): {e}") from e
        try:
            data = r.json()
        except ValueError:
            data = {}
        if r.status_code >= 400:
            raise ProviderError(f"Asaas respondeu {r.status_code} em {method} {path}: {data}")
        return data

    def find_or_create_customer(self, order) -> str:
        found = self._call("GET", "/customers", params={"email": order.customer_email})
        for c in found.get("data") or []:
            if c.get("email") == order.customer_email and c.get("id"):
                return str(c["id"])
        body = {"name": order.customer_name, "email": order.customer_email}
        if order.customer_cpf:
            body["cpfCnpj"] = boleto.only_digits(order.customer_cpf)
        if order.customer_phone:
            body["mobilePhone"] = order.customer_phone
        created = self._call("POST", "/customers", json=body)
        if not created.get("id"):
            raise ProviderError("Asaas não devolveu o id do cliente")
        return str(created["id"])

    def create_title(self, order, amount_cents: int, due_date: date) -> ProviderTitle:
        customer_id = self.find_or_create_customer(order)
        payment = self._call("POST", "/payments", json={
            "customer": customer_id,
            "billingType": "BOLETO",
            "value": round(amount_cents / 100, 2),
            "dueDate": due_date.isoformat(),
            "description": f"Pedido {order.order_nsu}",
            "externalReference": order.order_nsu,
            "postalService": False,
        })
        if not payment.get("id"):
            raise ProviderError("Asaas não devolveu o id da cobrança")
        linha = boleto.only_digits(payment.get("identificationField"))
        barcode = boleto.only_digits(payment.get("barcode"))
        if not linha:
            # linha digitável só fica disponível em GET /payments/{id}/identificationField
            extra = self._call("GET", f"/payments/{payment['id']}/identificationField")
            linha = boleto.only_digits(extra.get("identificationField"))
            barcode = barcode or boleto.only_digits(extra.get("barCode"))
        return ProviderTitle(
            provider_title_id=str(payment["id"]),
            linha_digitavel=linha,
            barcode=barcode or linha,
            document_ref=None,
            boleto_url=payment.get("bankSlipUrl") or payment.get("invoiceUrl"),
        )

    def cancel_title(self, provider_title_id: str) -> None:
        self._call("DELETE", f"/payments/{provider_title_id}")


def get_provider(config: BoletoConfiguration) -> ProviderAdapter:
    s = config.settings
    if not isinstance(s, RegisteredConfig):
        raise ProviderNotConfigured("Provedor só existe no modo registrado")
    name = s.provider.lower()
    if "asaas" in name:
        token = current_app.config.get("ASAAS_ACCESS_TOKEN") or s.credentials.client_secret
        if not token or not s.credentials.endpoint:
            raise ProviderNotConfigured("Credenciais do Asaas ausentes")
        return AsaasProvider(
            s.credentials.endpoint,
            token,
            timeout=int(current_app.config.get("PROVIDER_TIMEOUT_SECONDS", 20)),
        )
    raise ProviderNotConfigured(f"Provedor sem integração: {s.provider!r}")
