# backend/wsgi.py
from tradebooks import create_app

app = create_app()
