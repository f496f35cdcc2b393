# backend/wsgi.py
from gymdesk import create_app

app = create_app()
