"""API package: provides FastAPI dependencies and route definitions for the expense categorizer."""

from .dependencies import get_ingestion_service, get_requester_id, get_settings, get_store, get_work_queue  # noqa: F401
from .routes import router  # noqa: F401
