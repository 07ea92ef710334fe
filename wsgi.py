"""
WSGI / Flask CLI entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade
    flask --app wsgi compliance-tick
    flask --app wsgi dispatch-intents
"""

from compliance_engine import create_app

app = create_app()
