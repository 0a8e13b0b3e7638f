# cobranca_app/__init__.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import os

from flask import Flask
from config import Config, TestingConfig, StagingConfig, ProductionConfig
from .blueprints.admin import admin_bp
from .extensions import db, bcrypt, migrate, scheduler, init_extensions, register_cli
from .errors import register_error_handlers
from .services.notifications import init_scheduler_jobs
from .blueprints.auth import bp as auth_bp
from .blueprints.checkout import bp as checkout_bp
from .blueprints.webhooks import bp as webhooks_bp
from datetime import datetime

CONFIGS = {
    "testing": TestingConfig,
    "staging": StagingConfig,
    "production": ProductionConfig,
}


def create_app(config_object: type[Config] | None = None) -> Flask:
    app = Flask(__name__)
    app_env = os.getenv("APP_ENV", "").lower()
    app.config.from_object(config_object or CONFIGS.get(app_env, Config))

    if app.config.get("TESTING") and os.getenv("SQLALCHEMY_DATABASE_URI"):
        # a classe de config foi lida no import; o banco de teste vem do ambiente atual
        app.config["SQLALCHEMY_DATABASE_URI"] = os.environ["SQLALCHEMY_DATABASE_URI"]

    # Extensões (DB/Bcrypt/Migrate)
    init_extensions(app)
    register_error_handlers(app)
    app.config["STARTED_AT"] = datetime.utcnow().strftime("%Y-%m-%d %H:%M:%S UTC")

    # Blueprints
    app.register_blueprint(auth_bp)
    app.register_blueprint(checkout_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(admin_bp, url_prefix="/admin")
    # CLI (ex.: flask init-db)
    register_cli(app)

    # Scheduler (despacho do outbox de notificações)
    if not app.config.get("TESTING") and os.getenv("DISABLE_SCHEDULER") != "1":
        init_scheduler_jobs(app)
        if not scheduler.running:
            scheduler.start()

    return app


__all__ = ["create_app", "db", "bcrypt", "migrate"]
