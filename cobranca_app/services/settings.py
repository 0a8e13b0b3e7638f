# cobranca_app/services/settings.py
# -*- coding: utf-8 -*-
"""
Configuração do boleto.

Uma única linha em `settings` (grupo "boleto", chave "boleto_settings") guarda o
JSON da configuração. Ao longo do tempo a loja gravou três formatos diferentes
nessa linha; aqui todos viram o mesmo modelo lógico:

  BoletoConfiguration(enabled, environment, version,
                      settings=ManualConfig | RegisteredConfig)

Nada é cacheado: cada requisição lê a versão atual do banco.
"""
from __future__ import annotations
import json
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Union

from flask import current_app

from ..extensions import db
from ..models import Setting
from ..errors import ConfigMissing, ConfigInvalid, ValidationError

BOLETO_GROUP = "boleto"
SETTINGS_KEY = "boleto_settings"
LEGACY_REGISTERED_KEY = "boleto_registered_settings"

MODE_MANUAL = "manual"
MODE_REGISTERED = "registered"
ENV_SANDBOX = "sandbox"
ENV_PRODUCTION = "production"

SECRET_FIELDS = ("client_secret", "webhook_secret")

# endpoint padrão por provedor conhecido quando o admin deixa em branco
PROVIDER_ENDPOINTS = {
    "asaas": {
        ENV_SANDBOX: "https://sandbox.asaas.com/api/v3",
        ENV_PRODUCTION: "https://api.asaas.com/api/v3",
    },
}


def get_setting(key: str, group: str = "payments", default: str = "") -> str:
    s = Setting.query.filter_by(group=group, key=key).first()
    return s.value if s else default


# ---------------------------------------------------------------------
# Modelo lógico
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BankAccount:
    code: str = ""
    name: str = ""
    agency: str = ""
    account: str = ""
    account_digit: str = ""
    account_type: str = "corrente"
    wallet: str = ""
    agreement: str = ""
    beneficiary_name: str = ""
    beneficiary_document: str = ""

@dataclass(frozen=True)
class Discount:
    type: str = "percent"     # percent | value
    value: float = 0.0
    until: Optional[str] = None

@dataclass(frozen=True)
class BillingTerms:
    days_to_expire: int = 3
    fine_percent: float = 0.0
    interest_percent_month: float = 0.0
    instructions: str = ""
    discount: Optional[Discount] = None

@dataclass(frozen=True)
class ProviderCredentials:
    api_type: str = ""        # api | cnab
    endpoint: str = ""
    client_id: str = ""
    client_secret: str = ""
    certificate_ref: str = ""
    webhook_secret: str = ""

@dataclass(frozen=True)
class ManualConfig:
    bank: BankAccount = field(default_factory=BankAccount)
    billing: BillingTerms = field(default_factory=BillingTerms)
    mode = MODE_MANUAL

@dataclass(frozen=True)
class RegisteredConfig:
    provider: str = ""
    bank: BankAccount = field(default_factory=BankAccount)
    billing: BillingTerms = field(default_factory=BillingTerms)
    credentials: ProviderCredentials = field(default_factory=ProviderCredentials)
    mode = MODE_REGISTERED

@dataclass(frozen=True)
class BoletoConfiguration:
    enabled: bool
    settings: Union[ManualConfig, RegisteredConfig]
    environment: str = ENV_SANDBOX
    version: int = 0

    @property
    def mode(self) -> str:
        return self.settings.mode

    @property
    def bank(self) -> BankAccount:
        return self.settings.bank

    @property
    def billing(self) -> BillingTerms:
        return self.settings.billing

    @property
    def is_sandbox(self) -> bool:
        return self.environment == ENV_SANDBOX


# ---------------------------------------------------------------------
# Normalização dos formatos gravados
# ---------------------------------------------------------------------
def _s(v) -> str:
    return str(v if v is not None else "").strip()

def _num(v, default=0.0) -> float:
    if v is None or v == "":
        return float(default)
    try:
        return float(str(v).replace(",", "."))
    except (TypeError, ValueError):
        raise ValidationError(f"Valor numérico inválido: {v!r}")

def _int(v, default=0) -> int:
    return int(_num(v, default))

def _first(*values):
    for v in values:
        if v is not None and v != "":
            return v
    return None

def normalize_environment(raw: Dict[str, Any]) -> str:
    env = raw.get("environment")
    if isinstance(env, str) and env.strip():
        env = env.strip().lower()
        if env in ("sandbox", "homolog", "homologacao", "homologação", "test"):
            return ENV_SANDBOX
        if env in ("production", "producao", "produção", "prod"):
            return ENV_PRODUCTION
        return ""
    if "sandbox" in raw:
        return ENV_SANDBOX if raw.get("sandbox") else ENV_PRODUCTION
    return ""

def _discount(raw) -> Optional[Discount]:
    if not isinstance(raw, dict) or not raw:
        return None
    return Discount(type=_s(raw.get("type")) or "percent", value=_num(raw.get("value")), until=raw.get("until") or None)

def _api_type_for(provider: str) -> str:
    if not provider:
        return ""
    return "cnab" if "bank" in provider.lower() else "api"


def _billing_terms(raw: Dict[str, Any], *fallbacks: Dict[str, Any]) -> BillingTerms:
    """billing{} tem prioridade; depois a raiz e os blocos extras, nessa ordem."""
    billing = raw.get("billing") if isinstance(raw.get("billing"), dict) else {}
    sources = (billing, raw) + fallbacks

    def pick(*keys):
        return _first(*(src.get(k) for src in sources for k in keys))

    return BillingTerms(
        days_to_expire=_int(pick("days_to_expire"), 3),
        fine_percent=_num(pick("fine_percent")),
        interest_percent_month=_num(pick("interest_percent_month", "interest_percent", "interest_monthly_percent")),
        instructions=_s(pick("instructions")),
        discount=_discount(pick("discount")),
    )


def _from_admin_registered(raw: Dict[str, Any]) -> BoletoConfiguration:
    """Formato da tela de boleto registrado: bank{}, api{}, billing{}."""
    bank = raw.get("bank") or {}
    api = raw.get("api") or {}
    provider = _s(raw.get("provider"))
    settings = RegisteredConfig(
        provider=provider,
        bank=BankAccount(
            code=_s(bank.get("code")),
            name=_s(bank.get("name")),
            agency=_s(bank.get("agency")),
            account=_s(bank.get("account")),
            account_digit=_s(_first(bank.get("account_dv"), bank.get("account_digit"))),
            wallet=_s(bank.get("wallet")),
            agreement=_s(bank.get("agreement")),
            beneficiary_name=_s(bank.get("beneficiary_name")),
            beneficiary_document=_s(bank.get("beneficiary_document")),
        ),
        billing=_billing_terms(raw),
        credentials=ProviderCredentials(
            api_type=_s(api.get("type")).lower(),
            endpoint=_s(api.get("endpoint")),
            client_id=_s(api.get("client_id")),
            client_secret=_s(api.get("client_secret")),
            certificate_ref=_s(api.get("certificate_ref")),
            webhook_secret=_s(_first(api.get("webhook_secret"), raw.get("webhook_secret"))),
        ),
    )
    return BoletoConfiguration(
        enabled=bool(raw.get("enabled", True)),
        settings=settings,
        environment=normalize_environment(api) or normalize_environment(raw),
    )


def _from_unified(raw: Dict[str, Any]) -> BoletoConfiguration:
    """Formato unificado: mode + blocos manual{} e registered{}."""
    mode = _s(raw.get("mode")).lower() or MODE_MANUAL
    manual = raw.get("manual") or {}
    reg = raw.get("registered") or {}
    creds = reg.get("credentials") or {}
    billing = _billing_terms(raw, reg)

    if mode == MODE_REGISTERED:
        reg_bank = reg.get("bank") or {}
        provider = _s(_first(raw.get("provider"), reg.get("provider")))
        settings = RegisteredConfig(
            provider=provider,
            bank=BankAccount(
                code=_s(reg_bank.get("code")),
                name=_s(reg_bank.get("name")),
                agency=_s(reg.get("agency")),
                account=_s(reg.get("account")),
                account_digit=_s(reg.get("account_digit")),
                wallet=_s(reg.get("wallet")),
                agreement=_s(_first(reg.get("convenio"), reg.get("agreement"))),
                beneficiary_name=_s(reg.get("beneficiary_name")),
                beneficiary_document=_s(reg.get("beneficiary_document")),
            ),
            billing=billing,
            credentials=ProviderCredentials(
                api_type=_s(creds.get("api_type")).lower() or _api_type_for(provider),
                endpoint=_s(_first(creds.get("api_endpoint"), creds.get("endpoint"))),
                client_id=_s(creds.get("client_id")),
                client_secret=_s(_first(creds.get("client_secret"), reg.get("client_secret"), reg.get("api_token"))),
                certificate_ref=_s(creds.get("certificate_ref")),
                webhook_secret=_s(reg.get("webhook_secret")),
            ),
        )
    elif mode == MODE_MANUAL:
        # a tela do admin devolve os dados bancários em bank{}
        bank = raw.get("bank") if isinstance(raw.get("bank"), dict) else {}
        settings = ManualConfig(
            bank=BankAccount(
                code=_s(_first(manual.get("bank_code"), bank.get("code"))),
                name=_s(_first(manual.get("bank_name"), bank.get("name"))),
                agency=_s(_first(manual.get("agency"), bank.get("agency"))),
                account=_s(_first(manual.get("account"), bank.get("account"))),
                account_type=_s(_first(manual.get("account_type"), bank.get("account_type"))) or "corrente",
                beneficiary_name=_s(_first(manual.get("beneficiary_name"), bank.get("beneficiary_name"))),
                beneficiary_document=_s(_first(manual.get("beneficiary_document"), bank.get("beneficiary_document"))),
            ),
            billing=billing,
        )
    else:
        raise ValidationError(f"Modo de boleto desconhecido: {mode!r}")

    return BoletoConfiguration(
        enabled=bool(raw.get("enabled")),
        settings=settings,
        environment=normalize_environment(raw),
    )


def _from_legacy_flat(raw: Dict[str, Any]) -> BoletoConfiguration:
    """Formato antigo, só boleto manual com os campos na raiz."""
    return BoletoConfiguration(
        enabled=True,
        environment=ENV_SANDBOX,
        settings=ManualConfig(
            bank=BankAccount(
                code=_s(raw.get("bank_code")),
                name=_s(raw.get("bank_name")),
                agency=_s(raw.get("agency")),
                account=_s(raw.get("account")),
                account_type=_s(raw.get("account_type")) or "corrente",
                beneficiary_name=_s(raw.get("beneficiary_name")),
                beneficiary_document=_s(raw.get("beneficiary_document")),
            ),
            billing=BillingTerms(
                days_to_expire=_int(raw.get("days_to_expire"), 3) or 3,
                instructions=_s(raw.get("instructions")),
            ),
        ),
    )


def normalize(raw: Dict[str, Any], version: int = 0) -> BoletoConfiguration:
    if not isinstance(raw, dict):
        raise ValidationError("Configuração de boleto inválida")
    mode = _s(raw.get("mode")).lower()
    has_api = isinstance(raw.get("api"), dict)
    if mode == MODE_REGISTERED and has_api:
        cfg = _from_admin_registered(raw)
    elif mode:
        cfg = _from_unified(raw)
    elif has_api:
        cfg = _from_admin_registered(raw)
    elif "manual" in raw or "registered" in raw or "enabled" in raw:
        cfg = _from_unified(raw)
    else:
        cfg = _from_legacy_flat(raw)
    return _with_default_endpoint(replace(cfg, version=version))


def _with_default_endpoint(cfg: BoletoConfiguration) -> BoletoConfiguration:
    s = cfg.settings
    if isinstance(s, RegisteredConfig) and not s.credentials.endpoint:
        endpoint = PROVIDER_ENDPOINTS.get(s.provider.lower(), {}).get(cfg.environment, "")
        if endpoint:
            s = replace(s, credentials=replace(s.credentials, endpoint=endpoint))
            return replace(cfg, settings=s)
    return cfg


def to_storage(cfg: BoletoConfiguration) -> Dict[str, Any]:
    """Serializa no formato unificado (o único que gravamos hoje)."""
    s = cfg.settings
    billing = s.billing
    value: Dict[str, Any] = {
        "enabled": bool(cfg.enabled),
        "mode": s.mode,
        "environment": cfg.environment,
        "days_to_expire": billing.days_to_expire,
        "instructions": billing.instructions,
        "fine_percent": billing.fine_percent,
        "interest_percent_month": billing.interest_percent_month,
        "discount": (
            {"type": billing.discount.type, "value": billing.discount.value, "until": billing.discount.until}
            if billing.discount else None
        ),
    }
    if isinstance(s, ManualConfig):
        value["provider"] = "bank"
        value["manual"] = {
            "bank_code": s.bank.code,
            "bank_name": s.bank.name,
            "agency": s.bank.agency,
            "account": s.bank.account,
            "account_type": s.bank.account_type,
            "beneficiary_name": s.bank.beneficiary_name,
            "beneficiary_document": s.bank.beneficiary_document,
        }
        value["registered"] = {}
    elif isinstance(s, RegisteredConfig):
        c = s.credentials
        value["provider"] = s.provider
        value["manual"] = {}
        value["registered"] = {
            "bank": {"code": s.bank.code, "name": s.bank.name},
            "agency": s.bank.agency,
            "account": s.bank.account,
            "account_digit": s.bank.account_digit,
            "wallet": s.bank.wallet,
            "convenio": s.bank.agreement,
            "beneficiary_name": s.bank.beneficiary_name,
            "beneficiary_document": s.bank.beneficiary_document,
            "webhook_secret": c.webhook_secret,
            "credentials": {
                "api_type": c.api_type,
                "api_endpoint": c.endpoint,
                "client_id": c.client_id,
                "client_secret": c.client_secret,
                "certificate_ref": c.certificate_ref,
            },
        }
    else:
        raise TypeError(f"configuração desconhecida: {type(s).__name__}")
    return value


# ---------------------------------------------------------------------
# Leitura
# ---------------------------------------------------------------------
def _row(lock: bool = False) -> Optional[Setting]:
    q = Setting.query.filter_by(group=BOLETO_GROUP, key=SETTINGS_KEY)
    if lock:
        q = q.with_for_update()
    return q.first()


def load_config() -> Optional[BoletoConfiguration]:
    """Configuração persistida (sem validar completude) ou None."""
    row = _row()
    if row and row.value:
        return normalize(json.loads(row.value), version=row.version or 0)
    # fallback: chave antiga da tela de boleto registrado
    legacy = get_setting(LEGACY_REGISTERED_KEY, group=BOLETO_GROUP, default="")
    if legacy:
        raw = json.loads(legacy)
        if _s(raw.get("mode")) == MODE_REGISTERED:
            return normalize(raw)
    return None


def validate_active(cfg: BoletoConfiguration) -> BoletoConfiguration:
    s = cfg.settings
    if isinstance(s, ManualConfig):
        missing = [n for n, v in (
            ("bank_code", s.bank.code),
            ("beneficiary_name", s.bank.beneficiary_name),
            ("beneficiary_document", s.bank.beneficiary_document),
        ) if not v]
    elif isinstance(s, RegisteredConfig):
        missing = [n for n, v in (
            ("provider", s.provider),
            ("environment", cfg.environment),
            ("endpoint", s.credentials.endpoint),
        ) if not v]
    else:
        raise TypeError(f"configuração desconhecida: {type(s).__name__}")
    if missing:
        raise ConfigInvalid(f"Configuração de boleto incompleta: {', '.join(missing)}")
    return cfg


def get_active_config() -> BoletoConfiguration:
    cfg = load_config()
    if cfg is None:
        raise ConfigMissing("Nenhuma configuração de boleto gravada")
    return validate_active(cfg)


def redact(cfg: Optional[BoletoConfiguration]) -> Optional[Dict[str, Any]]:
    """Visão do admin: nenhum segredo sai daqui, só secrets_present."""
    if cfg is None:
        return None
    s = cfg.settings
    b = s.bank
    out: Dict[str, Any] = {
        "enabled": cfg.enabled,
        "mode": s.mode,
        "environment": cfg.environment,
        "version": cfg.version,
        "bank": {
            "code": b.code, "name": b.name, "agency": b.agency, "account": b.account,
            "account_digit": b.account_digit, "account_type": b.account_type,
            "wallet": b.wallet, "agreement": b.agreement,
            "beneficiary_name": b.beneficiary_name, "beneficiary_document": b.beneficiary_document,
        },
        "billing": {
            "days_to_expire": s.billing.days_to_expire,
            "fine_percent": s.billing.fine_percent,
            "interest_percent_month": s.billing.interest_percent_month,
            "instructions": s.billing.instructions,
            "discount": to_storage(cfg)["discount"],
        },
    }
    if isinstance(s, ManualConfig):
        out["provider"] = None
        out["api"] = None
    elif isinstance(s, RegisteredConfig):
        c = s.credentials
        out["provider"] = s.provider
        out["api"] = {
            "type": c.api_type,
            "endpoint": c.endpoint,
            "client_id": c.client_id,
            "certificate_ref": c.certificate_ref,
            "secrets_present": {name: bool(getattr(c, name)) for name in SECRET_FIELDS},
        }
    else:
        raise TypeError(f"configuração desconhecida: {type(s).__name__}")
    return out


def public_view(cfg: Optional[BoletoConfiguration]) -> Dict[str, Any]:
    """O que o checkout (sem login) pode ver."""
    if cfg is None or not cfg.enabled:
        return {"configured": False, "error": "Boleto não configurado"}
    try:
        validate_active(cfg)
    except ConfigInvalid:
        return {"configured": False, "error": "Boleto não configurado"}
    s = cfg.settings
    if isinstance(s, ManualConfig):
        return {
            "configured": True,
            "mode": s.mode,
            "bank_code": s.bank.code,
            "bank_name": s.bank.name,
            "agency": s.bank.agency,
            "account": s.bank.account,
            "account_type": s.bank.account_type,
            "beneficiary_name": s.bank.beneficiary_name,
            "beneficiary_document": s.bank.beneficiary_document,
            "instructions": s.billing.instructions,
            "days_to_expire": s.billing.days_to_expire,
        }
    if isinstance(s, RegisteredConfig):
        return {
            "configured": True,
            "mode": s.mode,
            "provider": s.provider,
            "environment": cfg.environment,
            "instructions": s.billing.instructions,
            "days_to_expire": s.billing.days_to_expire,
            "bank_code": s.bank.code,
            "bank_name": s.bank.name,
        }
    raise TypeError(f"configuração desconhecida: {type(s).__name__}")


# ---------------------------------------------------------------------
# Escrita
# ---------------------------------------------------------------------
def _validate_for_save(cfg: BoletoConfiguration) -> None:
    s = cfg.settings
    if isinstance(s, ManualConfig):
        required = {
            "bank_code": s.bank.code,
            "bank_name": s.bank.name,
            "agency": s.bank.agency,
            "account": s.bank.account,
            "beneficiary_name": s.bank.beneficiary_name,
            "beneficiary_document": s.bank.beneficiary_document,
        }
    elif isinstance(s, RegisteredConfig):
        required = {
            "provider": s.provider,
            "api.type": s.credentials.api_type if s.credentials.api_type in ("api", "cnab") else "",
            "api.environment": cfg.environment,
        }
    else:
        raise TypeError(f"configuração desconhecida: {type(s).__name__}")
    missing = [k for k, v in required.items() if not v]
    if missing:
        raise ValidationError(f"Campos obrigatórios não preenchidos: {', '.join(missing)}")
    if s.billing.days_to_expire < 1:
        raise ValidationError("days_to_expire deve ser maior que zero")
    if s.billing.fine_percent < 0 or s.billing.interest_percent_month < 0:
        raise ValidationError("Multa e juros não podem ser negativos")


def _keep_stored_secrets(new: BoletoConfiguration, old: Optional[BoletoConfiguration]) -> BoletoConfiguration:
    s = new.settings
    if not isinstance(s, RegisteredConfig) or old is None or not isinstance(old.settings, RegisteredConfig):
        return new
    creds = s.credentials
    kept = {n: getattr(old.settings.credentials, n) for n in SECRET_FIELDS
            if not getattr(creds, n) and getattr(old.settings.credentials, n)}
    if not kept:
        return new
    return replace(new, settings=replace(s, credentials=replace(creds, **kept)))


def save_config(payload: Dict[str, Any]) -> BoletoConfiguration:
    if not isinstance(payload, dict) or not payload:
        raise ValidationError("Payload inválido")
    cfg = normalize(payload)
    if not cfg.environment:
        # manual não depende de ambiente; registrado é validado abaixo
        if isinstance(cfg.settings, ManualConfig):
            cfg = replace(cfg, environment=ENV_SANDBOX)
    _validate_for_save(cfg)

    row = _row(lock=True)
    old = normalize(json.loads(row.value), version=row.version or 0) if row and row.value else None
    cfg = _keep_stored_secrets(cfg, old)

    value = json.dumps(to_storage(cfg), ensure_ascii=False)
    if row is None:
        row = Setting(group=BOLETO_GROUP, key=SETTINGS_KEY, value=value, version=1)
        db.session.add(row)
    else:
        row.value = value
        row.version = (row.version or 0) + 1
    db.session.commit()
    current_app.logger.info("Configuração de boleto salva (modo=%s, versão=%s)", cfg.mode, row.version)
    return replace(cfg, version=row.version)


def set_enabled(enabled: bool) -> BoletoConfiguration:
    row = _row(lock=True)
    if row is None or not row.value:
        raise ConfigMissing("Nenhuma configuração de boleto gravada")
    raw = json.loads(row.value)
    cfg = replace(normalize(raw), enabled=bool(enabled))
    row.value = json.dumps(to_storage(cfg), ensure_ascii=False)
    row.version = (row.version or 0) + 1
    db.session.commit()
    current_app.logger.info("Boleto %s", "habilitado" if enabled else "desabilitado")
    return replace(cfg, version=row.version)
