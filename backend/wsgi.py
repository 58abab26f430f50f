# backend/wsgi.py
from override_authority import create_app

app = create_app()
