"""WSGI entry point for the mock target."""

import os

from mock_target import create_app

app = create_app(os.getenv("MOCK_TARGET_ENV", "production"))
