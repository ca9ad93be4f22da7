import logging
import os

from pitchpractice.backend.web import create_app


logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO")

app = create_app()
