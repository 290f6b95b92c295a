"""
WSGI entry point and Flask-Migrate / Alembic host.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db migrate -m "description"
    flask --app wsgi db upgrade
    flask --app wsgi scan-workspace <organization_id>
"""

from app import create_app

app = create_app()
