# tests/test_settings_service.py
from __future__ import annotations
import json

import pytest

from cobranca_app.errors import ConfigInvalid, ConfigMissing, ValidationError
from cobranca_app.models.setting import Setting
from cobranca_app.services.settings import (
    BOLETO_GROUP, LEGACY_REGISTERED_KEY, SETTINGS_KEY,
    ManualConfig, RegisteredConfig,
    get_active_config, get_setting, load_config, normalize, public_view, redact,
    save_config, set_enabled,
)


# -----------------------------------------------------------------------------
# get_setting
# -----------------------------------------------------------------------------
def test_get_setting_returns_default_when_missing(db_session):
    assert get_setting("pix_key", group="payments", default="") == ""
    assert get_setting("nao_existe", group="qualquer", default="DEFAULT") == "DEFAULT"


def test_get_setting_reads_existing_row(db_session):
    db_session.add(Setting(group="store", key="admin_email", value="a@loja.com"))
    db_session.commit()
    assert get_setting("admin_email", group="store") == "a@loja.com"
    assert get_setting("admin_email", group="payments", default="x") == "x"


# -----------------------------------------------------------------------------
# Normalização dos formatos gravados
# -----------------------------------------------------------------------------
def test_normalize_legacy_flat_manual():
    cfg = normalize({
        "bank_code": "341", "bank_name": "Itaú", "agency": "1234", "account": "56789-0",
        "beneficiary_name": "Loja", "beneficiary_document": "123", "days_to_expire": 5,
    })
    assert isinstance(cfg.settings, ManualConfig)
    assert cfg.enabled is True
    assert cfg.bank.code == "341"
    assert cfg.billing.days_to_expire == 5
    assert cfg.bank.account_type == "corrente"


def test_normalize_unified_registered_with_sandbox_flag():
    cfg = normalize({
        "mode": "registered", "enabled": True, "sandbox": True, "provider": "asaas",
        "registered": {
            "bank": {"code": "237", "name": "Bradesco"},
            "agency": "0001", "account": "123", "interest_monthly_percent": "1,5",
            "webhook_secret": "wh",
            "credentials": {"client_secret": "tok"},
        },
    })
    assert isinstance(cfg.settings, RegisteredConfig)
    assert cfg.environment == "sandbox"
    assert cfg.settings.credentials.api_type == "api"
    assert cfg.settings.credentials.endpoint == "https://sandbox.asaas.com/api/v3"
    assert cfg.billing.interest_percent_month == 1.5
    assert cfg.bank.code == "237"


def test_normalize_admin_registered_homolog_is_sandbox(registered_settings):
    cfg = normalize(registered_settings)
    assert cfg.environment == "sandbox"
    registered_settings["api"]["environment"] = "production"
    assert normalize(registered_settings).environment == "production"
    assert normalize(registered_settings).settings.credentials.endpoint == "https://api.asaas.com/api/v3"


def test_normalize_rejects_unknown_mode():
    with pytest.raises(ValidationError):
        normalize({"mode": "pix"})


def test_normalize_branches_on_mode_before_blocks(manual_settings):
    manual_settings["billing"] = {"days_to_expire": 5, "fine_percent": 2}
    cfg = normalize(manual_settings)
    assert isinstance(cfg.settings, ManualConfig)
    assert cfg.billing.days_to_expire == 5
    assert cfg.billing.fine_percent == 2
    assert cfg.bank.agency == "0001"


def test_normalize_admin_registered_environment_at_root(registered_settings):
    del registered_settings["api"]["environment"]
    registered_settings["environment"] = "production"
    assert normalize(registered_settings).environment == "production"


# -----------------------------------------------------------------------------
# Leitura / validação
# -----------------------------------------------------------------------------
def test_get_active_config_missing(db_session):
    with pytest.raises(ConfigMissing):
        get_active_config()


def test_get_active_config_registered_without_environment_is_invalid(db_session):
    raw = {"mode": "registered", "enabled": True, "provider": "outro", "registered": {}}
    db_session.add(Setting(group=BOLETO_GROUP, key=SETTINGS_KEY, value=json.dumps(raw)))
    db_session.commit()
    with pytest.raises(ConfigInvalid):
        get_active_config()


def test_legacy_registered_key_is_used_as_fallback(db_session, registered_settings):
    db_session.add(Setting(group=BOLETO_GROUP, key=LEGACY_REGISTERED_KEY, value=json.dumps(registered_settings)))
    db_session.commit()
    cfg = get_active_config()
    assert cfg.mode == "registered"
    assert cfg.is_sandbox


# -----------------------------------------------------------------------------
# Escrita
# -----------------------------------------------------------------------------
def test_save_config_validates_manual_required_fields(db_session, manual_settings):
    manual_settings["manual"]["beneficiary_document"] = ""
    with pytest.raises(ValidationError) as exc:
        save_config(manual_settings)
    assert "beneficiary_document" in str(exc.value)
    assert load_config() is None


def test_save_config_validates_registered_required_fields(db_session, registered_settings):
    registered_settings["api"]["type"] = ""
    with pytest.raises(ValidationError):
        save_config(registered_settings)


def test_save_config_bumps_version(db_session, manual_settings):
    first = save_config(manual_settings)
    manual_settings["days_to_expire"] = 7
    second = save_config(manual_settings)
    assert second.version == first.version + 1
    assert get_active_config().billing.days_to_expire == 7
    assert db_session.query(Setting).filter_by(group=BOLETO_GROUP, key=SETTINGS_KEY).count() == 1


def test_blank_secret_keeps_stored_secret(db_session, registered_settings):
    save_config(registered_settings)
    registered_settings["api"]["client_secret"] = ""
    registered_settings["api"]["webhook_secret"] = ""
    save_config(registered_settings)
    creds = get_active_config().settings.credentials
    assert creds.client_secret == "s3cr3t"
    assert creds.webhook_secret == "wh-secret"


def test_admin_view_saves_back_unchanged_manual(db_session, boleto_manual):
    before = load_config()
    saved = save_config(redact(before))
    assert saved.version == before.version + 1
    assert isinstance(saved.settings, ManualConfig)
    assert saved.bank == before.bank
    assert saved.billing == before.billing
    assert saved.enabled is True


def test_admin_view_saves_back_unchanged_registered(db_session, boleto_sandbox):
    before = load_config()
    saved = save_config(redact(before))
    assert isinstance(saved.settings, RegisteredConfig)
    assert saved.environment == "sandbox"
    assert saved.billing == before.billing
    creds = get_active_config().settings.credentials
    assert creds == before.settings.credentials


def test_set_enabled_only_toggles(db_session, boleto_manual):
    cfg = set_enabled(False)
    assert cfg.enabled is False
    assert cfg.bank == boleto_manual.bank
    assert load_config().enabled is False


def test_set_enabled_without_config(db_session):
    with pytest.raises(ConfigMissing):
        set_enabled(True)


# -----------------------------------------------------------------------------
# Redação e visão pública
# -----------------------------------------------------------------------------
def test_redact_never_exposes_secrets(db_session, boleto_sandbox):
    out = redact(boleto_sandbox)
    dumped = json.dumps(out)
    assert "s3cr3t" not in dumped
    assert "wh-secret" not in dumped
    assert out["api"]["secrets_present"] == {"client_secret": True, "webhook_secret": True}


def test_redact_manual_has_no_api_block(boleto_manual):
    out = redact(boleto_manual)
    assert out["api"] is None
    assert out["mode"] == "manual"
    assert out["bank"]["beneficiary_name"] == "Loja Teste LTDA"


def test_public_view(db_session, boleto_manual):
    view = public_view(load_config())
    assert view["configured"] is True
    assert view["bank_code"] == "001"
    set_enabled(False)
    assert public_view(load_config()) == {"configured": False, "error": "Boleto não configurado"}
    assert public_view(None)["configured"] is False


def test_public_view_registered_hides_credentials(db_session, boleto_sandbox):
    view = public_view(load_config())
    assert view["mode"] == "registered"
    assert view["environment"] == "sandbox"
    assert "client_secret" not in json.dumps(view)
