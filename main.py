"""ASGI entry point: `uvicorn main:app`."""
from fleetrec.api import create_app

app = create_app()
