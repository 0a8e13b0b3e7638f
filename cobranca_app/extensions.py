# cobranca_app/extensions.py
# -*- coding: utf-8 -*-
from __future__ import annotations
from flask_sqlalchemy import SQLAlchemy
from flask_bcrypt import Bcrypt
from flask_migrate import Migrate
from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy import text
import click


db = SQLAlchemy()
bcrypt = Bcrypt()
migrate = Migrate()
scheduler = BackgroundScheduler(daemon=True)

def init_extensions(app):
    # DB/Bcrypt/Migrate
    db.init_app(app)
    bcrypt.init_app(app)
    migrate.init_app(app, db)

def register_cli(app):
    @app.cli.command("init-db")
    def init_db_cmd():
        """Cria as tabelas iniciais (DEV/MVP). Para produção: use flask db upgrade."""
        with app.app_context():
            # sanity check
            db.session.execute(text("SELECT 1"))
            db.create_all()
            print("Tabelas criadas.")

    @app.cli.command("create-admin")
    @click.argument("email")
    @click.argument("password")
    @click.option("--name", default="Administrador")
    def create_admin_cmd(email, password, name):
        """Cria (ou promove) um usuário administrador."""
        from .models import User
        with app.app_context():
            email = email.strip().lower()
            u = User.query.filter_by(email=email).first()
            if not u:
                u = User(name=name, email=email)
                db.session.add(u)
            u.is_admin = True
            u.set_password(password)
            db.session.commit()
            print(f"Admin {email} pronto.")

    @app.cli.command("dispatch-notifications")
    @click.option("--limit", default=50)
    def dispatch_notifications_cmd(limit):
        """Envia as notificações pendentes do outbox (uma passada)."""
        from .services.notifications import dispatch_pending
        with app.app_context():
            sent = dispatch_pending(limit=limit)
            print(f"{sent} notificação(ões) enviada(s).")
