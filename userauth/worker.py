"""Initialize the Celery application."""

from userauth.factory import create_worker_app

app = create_worker_app()
