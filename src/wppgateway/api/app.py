"""ASGI entrypoint: `app` built for the role in APP_ROLE."""

from .factory import create_app

app = create_app()
