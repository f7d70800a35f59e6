"""
WSGI / Flask-Migrate entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade
    flask --app wsgi redeliver-rewards --limit 500
"""

from betaprogram import create_app

app = create_app()
