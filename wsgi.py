"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi seed-workflow --site NDS
    gunicorn wsgi:app
"""

from opexhub import create_app

app = create_app()
