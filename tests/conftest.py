# tests/conftest.py
# -*- coding: utf-8 -*-
import os
import sys
import uuid
import pathlib
import importlib
import tempfile

import pytest
from sqlalchemy import event


# =====================================================================================
# Localização do projeto (garante que "cobranca_app" esteja no sys.path)
# =====================================================================================
def _add_project_root():
    here = pathlib.Path(__file__).resolve()
    for base in [here.parent, here.parent.parent, pathlib.Path.cwd()]:
        for candidate in [base, *base.parents]:
            if (candidate / "cobranca_app").is_dir():
                if str(candidate) not in sys.path:
                    sys.path.insert(0, str(candidate))
                return candidate
    return None


PROJECT_ROOT = _add_project_root()


# =====================================================================================
# Ambiente de testes unitários (sem serviços externos)
# =====================================================================================
@pytest.fixture(autouse=True, scope="session")
def _testing_env():
    os.environ["APP_ENV"] = "testing"
    os.environ["FLASK_ENV"] = "testing"
    os.environ["TESTING"] = "1"
    os.environ["DISABLE_SCHEDULER"] = "1"
    os.environ.setdefault("SECRET_KEY", "testing-secret")
    yield


def _import(modpath, name=None):
    mod = importlib.import_module(modpath)
    return getattr(mod, name) if name else mod


def _set_sqlite_pragmas(dbapi_conn, _conn_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


# =====================================================================================
# App Flask com SQLite temporário e schema criado uma vez por sessão
# =====================================================================================
@pytest.fixture(scope="session")
def app(_testing_env, tmp_path_factory):
    fd, db_path = tempfile.mkstemp(prefix="cobranca_test_", suffix=".sqlite")
    os.close(fd)

    os.environ["SQLALCHEMY_DATABASE_URI"] = f"sqlite:///{db_path}?check_same_thread=0&timeout=30"
    os.environ["DATABASE_URL"] = os.environ["SQLALCHEMY_DATABASE_URI"]

    create_app = _import("cobranca_app", "create_app")
    app = create_app()
    app.config["BOLETO_DOCS_FOLDER"] = str(tmp_path_factory.mktemp("boletos"))
    app.config["BOLETO_RATE_STORE"] = "database"

    from cobranca_app.extensions import db

    with app.app_context():
        if db.engine.url.get_backend_name() == "sqlite":
            event.listen(db.engine, "connect", _set_sqlite_pragmas)
        db.create_all()

    yield app

    with app.app_context():
        db.session.remove()
        db.engine.dispose()
    try:
        os.remove(db_path)
    except OSError:
        pass


# =====================================================================================
# Cada teste começa com as tabelas vazias
# =====================================================================================
@pytest.fixture(autouse=True)
def _clean_tables(app):
    yield
    from cobranca_app.extensions import db
    with app.app_context():
        db.session.rollback()
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db_session(app):
    from cobranca_app.extensions import db
    with app.app_context():
        try:
            yield db.session
        finally:
            db.session.rollback()
            db.session.close()


# =====================================================================================
# Mocks de serviços externos
#   - requests.get/post/request (sem rede); as chamadas ficam em `http_calls`
# =====================================================================================
class _Resp:
    def __init__(self, status_code=200, json_data=None, text="OK"):
        self.status_code = status_code
        self._json = json_data if json_data is not None else {}
        self.text = text

    def json(self):
        return self._json

    def raise_for_status(self):
        if self.status_code >= 400:
            import requests
            raise requests.HTTPError(f"{self.status_code} Error", response=self)


@pytest.fixture
def http_calls():
    return []


@pytest.fixture(autouse=True)
def _mock_externals(monkeypatch, http_calls):
    import requests

    def _record(method):
        def _call(url, *a, **k):
            http_calls.append((method, url, k))
            return _Resp()
        return _call

    def _request(method, url, *a, **k):
        http_calls.append((method.upper(), url, k))
        return _Resp()

    monkeypatch.setattr(requests, "get", _record("GET"), raising=False)
    monkeypatch.setattr(requests, "post", _record("POST"), raising=False)
    monkeypatch.setattr(requests, "request", _request, raising=False)
    yield


@pytest.fixture
def fake_response():
    return _Resp


# =====================================================================================
# Usuários e clientes logados
# =====================================================================================
@pytest.fixture
def user_admin(db_session):
    from cobranca_app.models.user import User
    email = f"admin+{uuid.uuid4().hex[:6]}@test.com"
    u = User(name="Admin", email=email, is_admin=True)
    u.set_password("secret123")
    db_session.add(u); db_session.commit()
    return u


@pytest.fixture
def user_normal(db_session):
    from cobranca_app.models.user import User
    email = f"user+{uuid.uuid4().hex[:6]}@test.com"
    u = User(name="User", email=email)
    u.set_password("secret123")
    db_session.add(u); db_session.commit()
    return u


@pytest.fixture
def logged_client_admin(client, user_admin):
    with client.session_transaction() as sess:
        sess["user"] = {"id": user_admin.id, "email": user_admin.email, "is_admin": True}
    return client


@pytest.fixture
def logged_client_user(client, user_normal):
    with client.session_transaction() as sess:
        sess["user"] = {"id": user_normal.id, "email": user_normal.email, "is_admin": False}
    return client


# =====================================================================================
# Configurações de boleto e pedidos prontos
# =====================================================================================
MANUAL_SETTINGS = {
    "mode": "manual",
    "enabled": True,
    "days_to_expire": 3,
    "instructions": "Não receber após o vencimento.",
    "manual": {
        "bank_code": "001",
        "bank_name": "Banco do Brasil",
        "agency": "0001",
        "account": "000000",
        "account_type": "corrente",
        "beneficiary_name": "Loja Teste LTDA",
        "beneficiary_document": "12.345.678/0001-90",
    },
}

REGISTERED_SETTINGS = {
    "mode": "registered",
    "enabled": True,
    "provider": "asaas",
    "bank": {"code": "", "name": ""},
    "api": {
        "type": "api",
        "environment": "homolog",
        "endpoint": "",
        "client_id": "cli-1",
        "client_secret": "s3cr3t",
        "certificate_ref": "",
        "webhook_secret": "wh-secret",
    },
    "billing": {"days_to_expire": 3, "fine_percent": 2, "interest_percent_month": 1, "instructions": ""},
}


@pytest.fixture
def manual_settings():
    import copy
    return copy.deepcopy(MANUAL_SETTINGS)


@pytest.fixture
def registered_settings():
    import copy
    return copy.deepcopy(REGISTERED_SETTINGS)


@pytest.fixture
def boleto_manual(db_session, manual_settings):
    from cobranca_app.services.settings import save_config
    return save_config(manual_settings)


@pytest.fixture
def boleto_sandbox(db_session, registered_settings):
    from cobranca_app.services.settings import save_config
    return save_config(registered_settings)


@pytest.fixture
def boleto_production(db_session, registered_settings):
    from cobranca_app.services.settings import save_config
    registered_settings["api"]["environment"] = "production"
    return save_config(registered_settings)


def checkout_payload(email=None, **overrides):
    payload = {
        "items": [
            {"id": "p1", "name": "Pimenta do reino 100g", "price": 19.9, "quantity": 2},
            {"id": 7, "name": "Cúrcuma 50g", "price": 12.5, "quantity": 1},
        ],
        "customer": {
            "name": "Maria Silva",
            "email": email or f"maria+{uuid.uuid4().hex[:6]}@example.com",
            "phone": "11999990000",
        },
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_order(db_session):
    from cobranca_app.models import Order

    def _make(**kw):
        data = dict(
            order_nsu=f"BOL_1700000000_{uuid.uuid4().hex[:6]}",
            customer_name="Maria Silva",
            customer_email="maria@example.com",
            items_json='[{"id": "p1", "name": "Pimenta", "quantity": 1, "price_cents": 12345}]',
            total_amount_cents=12345,
        )
        data.update(kw)
        o = Order(**data)
        db_session.add(o); db_session.commit()
        return o
    return _make
