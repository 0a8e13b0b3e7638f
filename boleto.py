# boleto.py
# -*- coding: utf-8 -*-
"""
Codificação da linha digitável / código de barras dos boletos manuais.

Módulo puro: nenhuma dependência de Flask ou banco. A mesma tupla de entrada
gera sempre a mesma saída (retentativas idempotentes dependem disso).

Layout do payload bruto (46 posições antes do DV):

    banco(3) + "9" + agência(4) + conta(10) + valor em centavos(10)
    + vencimento AAMMDD(6) + referência do pedido(7) + zeros à direita

O fragmento de vencimento é a data ISO truncada, não o "fator de vencimento"
dos boletos homologados pela FEBRABAN.
"""
from __future__ import annotations
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Union

RAW_LENGTH = 46
LINHA_LENGTH = RAW_LENGTH + 1
SEGMENT_DIGIT = "9"

BANK_WIDTH = 3
AGENCY_WIDTH = 4
ACCOUNT_WIDTH = 10
AMOUNT_WIDTH = 10
DUE_WIDTH = 6
REFERENCE_WIDTH = 7

_NON_DIGITS = re.compile(r"\D")


class EncodingError(ValueError):
    """Campo não cabe na largura fixa ou não é numérico."""


@dataclass(frozen=True)
class CodigoBoleto:
    raw: str
    check_digit: int
    linha_digitavel: str
    barcode: str


def only_digits(value) -> str:
    return _NON_DIGITS.sub("", str(value if value is not None else ""))


def _fixed(name: str, digits: str, width: int) -> str:
    if len(digits) > width:
        raise EncodingError(f"{name} excede {width} dígitos: {digits!r}")
    return digits.zfill(width)


def check_digit(digits: str) -> int:
    """
    Módulo 10 com pesos 2,1 alternados a partir do dígito mais à direita.
    Produtos > 9 são "dobrados" (soma dos algarismos).
    """
    if not digits or not digits.isdigit():
        raise EncodingError("payload do DV precisa ser numérico")
    total = 0
    factor = 2
    for ch in reversed(digits):
        p = int(ch) * factor
        total += (p // 10) + (p % 10) if p > 9 else p
        factor = 1 if factor == 2 else 2
    return (10 - (total % 10)) % 10


def due_fragment(due_date: Union[date, datetime, str]) -> str:
    if isinstance(due_date, datetime):
        due_date = due_date.date()
    if isinstance(due_date, date):
        iso = due_date.isoformat()
    else:
        iso = str(due_date or "")[:10]
    digits = only_digits(iso)
    if len(digits) != 8:
        raise EncodingError(f"data de vencimento inválida: {due_date!r}")
    return digits[2:]


def reference_fragment(order_reference: str) -> str:
    digits = only_digits(order_reference)
    if not digits:
        raise EncodingError(f"referência sem dígitos: {order_reference!r}")
    return digits[-REFERENCE_WIDTH:].zfill(REFERENCE_WIDTH)


def build_raw(bank_code, agency, account, amount_cents, due_date, order_reference) -> str:
    bank = str(bank_code or "").strip()
    if not bank.isdigit():
        raise EncodingError(f"código do banco inválido: {bank_code!r}")
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise EncodingError("valor deve ser inteiro em centavos")
    if amount_cents < 0:
        raise EncodingError("valor negativo")

    parts = [
        _fixed("banco", bank, BANK_WIDTH),
        SEGMENT_DIGIT,
        _fixed("agência", only_digits(agency), AGENCY_WIDTH),
        _fixed("conta", only_digits(account), ACCOUNT_WIDTH),
        _fixed("valor", str(amount_cents), AMOUNT_WIDTH),
        due_fragment(due_date),
        reference_fragment(order_reference),
    ]
    return "".join(parts).ljust(RAW_LENGTH, "0")


def encode(bank_code, agency, account, amount_cents: int, due_date, order_reference: str) -> CodigoBoleto:
    raw = build_raw(bank_code, agency, account, amount_cents, due_date, order_reference)
    dv = check_digit(raw)
    linha = raw + str(dv)
    return CodigoBoleto(raw=raw, check_digit=dv, linha_digitavel=linha, barcode=only_digits(linha))


def verify(linha_digitavel: str) -> bool:
    linha = only_digits(linha_digitavel)
    if len(linha) != LINHA_LENGTH:
        return False
    return check_digit(linha[:-1]) == int(linha[-1])


def format_linha(linha_digitavel: str) -> str:
    """Agrupa em blocos de 5 para leitura humana (o valor persistido continua só dígitos)."""
    digits = only_digits(linha_digitavel)
    blocks: List[str] = [digits[i:i + 5] for i in range(0, len(digits), 5)]
    return " ".join(blocks)
