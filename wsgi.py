"""
Flask-Migrate / Alembic and WSGI entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi seed-templates
    gunicorn wsgi:app
"""

from pipetrack import create_app

app = create_app()
