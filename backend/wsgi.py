# backend/wsgi.py
from stagetrack import create_app

app = create_app()
