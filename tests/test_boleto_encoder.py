# tests/test_boleto_encoder.py
from datetime import date, datetime

import pytest

import boleto
from boleto import EncodingError


SCENARIO_A = dict(
    bank_code="001",
    agency="0001",
    account="000000",
    amount_cents=12345,
    due_date=date(2024, 1, 4),
    order_reference="BOL_1700000000_abc123",
)


def test_scenario_a_layout_and_check_digit():
    c = boleto.encode(**SCENARIO_A)
    assert c.raw == "0019000100000000000000012345240104000012300000"
    assert c.check_digit == 5
    assert c.linha_digitavel == "00190001000000000000000123452401040000123000005"
    assert c.barcode == c.linha_digitavel
    assert len(c.linha_digitavel) == 47 and c.linha_digitavel.isdigit()


def test_encode_is_deterministic():
    a = boleto.encode(**SCENARIO_A)
    b = boleto.encode(**SCENARIO_A)
    assert a == b


def test_due_date_accepts_date_datetime_and_iso_string():
    d = boleto.encode(**SCENARIO_A)
    dt = boleto.encode(**dict(SCENARIO_A, due_date=datetime(2024, 1, 4, 15, 30)))
    s = boleto.encode(**dict(SCENARIO_A, due_date="2024-01-04"))
    assert d.linha_digitavel == dt.linha_digitavel == s.linha_digitavel


def test_agency_and_account_are_stripped_of_non_digits():
    c = boleto.encode(**dict(SCENARIO_A, agency="0001-", account="00.000-0"))
    assert c.raw[4:8] == "0001"
    assert c.raw[8:18] == "0000000000"


def test_check_digit_small_cases():
    assert boleto.check_digit("0") == 0
    assert boleto.check_digit("5") == 9        # 5*2=10 -> 1+0
    assert boleto.check_digit("18") == 2       # 8*2=16 -> 7, 1*1 -> 8


def test_verify_detects_tampering():
    linha = boleto.encode(**SCENARIO_A).linha_digitavel
    assert boleto.verify(linha)
    tampered = linha[:10] + ("1" if linha[10] != "1" else "2") + linha[11:]
    assert not boleto.verify(tampered)
    assert not boleto.verify(linha[:-1])


def test_format_linha_groups_by_five():
    linha = boleto.encode(**SCENARIO_A).linha_digitavel
    formatted = boleto.format_linha(linha)
    assert formatted.replace(" ", "") == linha
    assert formatted.split(" ")[0] == "00190"


@pytest.mark.parametrize("overrides", [
    {"agency": "12345"},
    {"account": "12345678901"},
    {"amount_cents": 10_000_000_000},
    {"amount_cents": -1},
    {"amount_cents": 123.45},
    {"amount_cents": True},
    {"bank_code": "1234"},
    {"bank_code": "abc"},
    {"bank_code": ""},
    {"order_reference": "BOL_abc"},
    {"due_date": "amanhã"},
])
def test_encoding_errors(overrides):
    with pytest.raises(EncodingError):
        boleto.encode(**dict(SCENARIO_A, **overrides))


def test_reference_uses_rightmost_digits():
    assert boleto.reference_fragment("BOL_1700000000_abc123") == "0000123"
    assert boleto.reference_fragment("X9") == "0000009"
    assert boleto.reference_fragment("123456789") == "3456789"
