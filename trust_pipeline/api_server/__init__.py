# HTTP query surface (FastAPI) over a pipeline instance.

from trust_pipeline.api_server.server import create_app

__all__ = ["create_app"]
