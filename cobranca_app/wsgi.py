# cobranca_app/wsgi.py
from . import create_app

app = create_app()
