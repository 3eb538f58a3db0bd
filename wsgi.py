"""
WSGI / Flask-Migrate entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi seed-directory
    flask --app wsgi scan-deadlines
    flask --app wsgi db migrate -m "description"
"""

from dealerflow import create_app

app = create_app()
