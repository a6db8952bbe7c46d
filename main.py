"""Main entrypoint and application factory for the Expense Categorizer API.

This module initializes the FastAPI application, configures logging, creates the expense table, optionally runs the
categorization worker pool inside the API process, and exposes the Scalar API reference endpoint for interactive
OpenAPI documentation. It also includes the main entrypoint for running the app with Uvicorn.
"""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from scalar_fastapi import get_scalar_api_reference
from sqlalchemy.exc import SQLAlchemyError

from categorizer.api.dependencies import get_store, get_work_queue
from categorizer.api.routes import router
from categorizer.core.settings import get_settings
from categorizer.core.utils import setup_logging
from categorizer.workers.pool import build_worker_pool

logger = setup_logging(get_settings().log_file)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Create the expenses table and, when enabled, run the worker pool for the lifetime of the app."""
    _ = app  # Silence unused argument warning
    settings = get_settings()
    store = get_store()
    try:
        store.create_tables()
    except SQLAlchemyError:
        logger.exception("Failed to create expenses table")
        raise

    stop_event = asyncio.Event()
    pool_task = None
    if settings.embedded_worker:
        pool = build_worker_pool(settings, store, get_work_queue())
        pool_task = asyncio.create_task(pool.run(stop_event))
        logger.info("Embedded categorization worker started")
    try:
        yield
    finally:
        if pool_task is not None:
            stop_event.set()
            await pool_task
            logger.info("Embedded categorization worker stopped")


app = FastAPI(
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    title="Expense Categorizer API",
    description="""
    The Expense Categorizer API ingests bank statement rows, categorizes them asynchronously with an LLM, and lets
    users accept or reject the suggested categories.

    **Endpoints:**
    - `POST /expenses/ingest`: Store expense rows and queue them for AI categorization.
    - `POST /expenses/upload-csv`: Same as ingest, from a CSV file and a column mapping.
    - `GET /expenses`: List the requester's expenses (`?uncategorized=true` to filter).
    - `GET /expenses/{{expense_id}}`: Get one expense.
    - `PUT /expenses/{{expense_id}}/category`: Set a category manually.
    - `POST /expenses/validate`: Accept or reject an AI suggestion.
    - `GET /health`: Health check endpoint.
    - `GET /scalar`: Interactive Scalar OpenAPI documentation.
    """,
    version="1.0.0",
)
app.include_router(router)


@app.get("/scalar", include_in_schema=False)
async def scalar_docs() -> JSONResponse:
    """Return Scalar API reference."""
    return get_scalar_api_reference(openapi_url=app.openapi_url, title=app.title)


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run("main:app", host=settings.server_host, port=settings.server_port, reload=True)
