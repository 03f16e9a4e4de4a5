"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi expire-allocations
    gunicorn wsgi:app
"""

from hourbook import create_app

app = create_app()
