"""FastAPI endpoints for the Expense Categorizer API.

This module defines the routes for ingesting expense rows (JSON or CSV), reading a user's expenses, committing a
category manually and accepting or rejecting AI suggestions. It wires the ingestion fan-out and the validation service
to HTTP, translating domain errors into status codes.
"""

import json
from typing import Any, TypeVar

from fastapi import APIRouter, Body, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from categorizer.api.dependencies import get_ingestion_service, get_requester_id, get_store, get_validation_service
from categorizer.core.db import ExpenseStore
from categorizer.core.errors import AuthorizationError, CategorizerError, NotFoundError, ValidationError
from categorizer.core.models import CategoryUpdate, Expense, IngestionReport, IngestRequest, ValidationRequest
from categorizer.core.utils import get_logger
from categorizer.services.ingestion import IngestionService, rows_from_csv
from categorizer.services.validation import ValidationService

router = APIRouter()
logger = get_logger("expense-categorizer.api")

HTTP_MULTI_STATUS = 207

M = TypeVar("M", bound=BaseModel)

EXPENSE_EXAMPLE = {
    "id": "9f86d081884c7d659a2feaa0c55ad015a3bf4f1b2b0b822cd15d6c15b0f00a08",
    "userId": "user-123",
    "summary": "Coffee Shop",
    "amount": "4.50",
    "timestamp": "2024-01-15T08:30:00Z",
    "createdAt": "2024-01-16T10:00:00Z",
    "updatedAt": "2024-01-16T10:01:00Z",
    "category": "Food & Dining",
    "categorizedAt": "2024-01-16T10:05:00Z",
    "note": None,
    "aiCategorizationEnabled": True,
    "aiCategorizationStatus": "completed",
    "aiCategorySuggestion": "Food & Dining",
    "aiCategoryConfidence": 0.92,
    "aiCategoryReasoning": "Coffee purchase",
    "aiValidation": "accepted",
    "aiCategorizedAt": "2024-01-16T10:01:00Z",
}
REPORT_EXAMPLE = {
    "totalRows": 3,
    "stored": 3,
    "enqueued": 2,
    "enqueueFailed": 0,
    "storeFailed": 0,
    "duplicates": 0,
    "invalidRows": 0,
}


def _error_response(description: str, detail: str) -> dict[str, Any]:
    return {"description": description, "content": {"application/json": {"example": {"detail": detail}}}}


def _http_error(exc: CategorizerError) -> HTTPException:
    """Translate a domain error into the matching HTTP error."""
    if isinstance(exc, NotFoundError):
        return HTTPException(404, str(exc))
    if isinstance(exc, AuthorizationError):
        return HTTPException(403, str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(400, str(exc))
    return HTTPException(500, str(exc))


def _parse_body(model: type[M], payload: Any) -> M:
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        errors = "; ".join(f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}" for err in exc.errors())
        raise HTTPException(400, f"Invalid request body: {errors}") from exc


def _report_response(report: IngestionReport) -> JSONResponse:
    status_code = HTTP_MULTI_STATUS if report.partial else 200
    return JSONResponse(report.model_dump(mode="json", by_alias=True), status_code=status_code)


@router.get(
    "/health",
    summary="Health check",
    description="Simple health check endpoint. Returns status ok.",
    response_description="Status ok.",
    responses={200: {"description": "API is healthy.", "content": {"application/json": {"example": {"status": "ok"}}}}},
)
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}


@router.post(
    "/expenses/ingest",
    summary="Ingest normalized expense rows",
    description=(
        "Store each row as an expense keyed by a digest of user, summary and timestamp. "
        "When `aiCategorizationEnabled` is true, rows without a category are queued for AI categorization.\n\n"
        "**Request:**\n"
        "- Header: `X-User-Id`\n"
        "- Body: `{ 'rows': [{ 'summary', 'amount', 'timestamp', 'category'? }], 'aiCategorizationEnabled': bool }`\n\n"
        "**Response:**\n"
        "- 200 OK: every row stored and, where enrolled, enqueued.\n"
        "- 207 Multi-Status: some rows failed to store or enqueue; counts are in the report.\n"
        "- 400 Bad Request: empty or malformed body."
    ),
    response_description="Ingestion report.",
    responses={
        200: {"description": "All rows ingested.", "content": {"application/json": {"example": REPORT_EXAMPLE}}},
        207: {"description": "Partial failure."},
        400: _error_response("Invalid request.", "No rows provided"),
        401: _error_response("Missing identity.", "Unauthorized: User authentication required"),
    },
)
async def ingest_expenses(
    payload: Any = Body(...),
    user_id: str = Depends(get_requester_id),
    service: IngestionService = Depends(get_ingestion_service),
) -> JSONResponse:
    """Ingest a batch of rows for the requesting user."""
    request = _parse_body(IngestRequest, payload)
    if not request.rows:
        raise HTTPException(400, "No rows provided")
    logger.info(f"Received ingest request: user={user_id}, rows={len(request.rows)}")
    report = await service.ingest(user_id, request.rows, request.ai_categorization_enabled)
    return _report_response(report)


@router.post(
    "/expenses/upload-csv",
    summary="Ingest a bank statement CSV",
    description=(
        "Upload a CSV file together with a column mapping. Each mapped row is fed to the ingestion fan-out.\n\n"
        "**Request:**\n"
        "- Content-Type: multipart/form-data\n"
        "- Form field: `file` (CSV file)\n"
        "- Form field: `fieldMapping` (JSON object mapping `summary`, `amount`, `timestamp` and optionally "
        "`category` to CSV column names)\n"
        "- Form field: `aiCategorizationEnabled` (bool, default false)\n"
        "- Form field: `dayFirst` (bool, default false): read ambiguous dates such as `02/03/2024` as day first\n\n"
        "**Response:**\n"
        "- 200 OK: all rows ingested.\n"
        "- 207 Multi-Status: some rows were invalid or failed to store or enqueue.\n"
        "- 400 Bad Request: not a CSV, unreadable CSV or bad mapping."
    ),
    response_description="Ingestion report.",
    responses={
        200: {"description": "All rows ingested.", "content": {"application/json": {"example": REPORT_EXAMPLE}}},
        207: {"description": "Partial failure."},
        400: _error_response("Invalid upload.", "Only CSV files accepted"),
        401: _error_response("Missing identity.", "Unauthorized: User authentication required"),
    },
)
async def upload_csv(
    file: UploadFile = File(...),
    field_mapping: str = Form(..., alias="fieldMapping"),
    ai_categorization_enabled: bool = Form(False, alias="aiCategorizationEnabled"),
    day_first: bool = Form(False, alias="dayFirst"),
    user_id: str = Depends(get_requester_id),
    service: IngestionService = Depends(get_ingestion_service),
) -> JSONResponse:
    """Upload a CSV file and ingest its rows."""
    logger.info(f"Received upload request: user={user_id}, filename={file.filename}")
    if not file.filename or not file.filename.lower().endswith(".csv"):
        logger.warning(f"Rejected file (not CSV): {file.filename}")
        raise HTTPException(400, "Only CSV files accepted")
    try:
        mapping = json.loads(field_mapping)
    except json.JSONDecodeError as exc:
        raise HTTPException(400, "fieldMapping must be a JSON object") from exc
    if not isinstance(mapping, dict):
        raise HTTPException(400, "fieldMapping must be a JSON object")

    data = await file.read()
    try:
        rows, invalid = rows_from_csv(data, mapping, dayfirst=day_first)
    except ValidationError as exc:
        raise _http_error(exc) from exc
    report = await service.ingest(user_id, rows, ai_categorization_enabled)
    report.invalid_rows = invalid
    report.total_rows += invalid
    return _report_response(report)


@router.get(
    "/expenses",
    response_model=list[Expense],
    summary="List the requester's expenses",
    description=(
        "Return the requesting user's expenses, newest first.\n\n"
        "**Query parameter:**\n"
        "- `uncategorized`: when true, only expenses without a committed category."
    ),
    response_description="Expenses.",
    responses={401: _error_response("Missing identity.", "Unauthorized: User authentication required")},
)
async def list_expenses(
    uncategorized: bool = False,
    user_id: str = Depends(get_requester_id),
    store: ExpenseStore = Depends(get_store),
) -> list[Expense]:
    """List expenses of the requesting user."""
    return await store.query_by_user(user_id, categorized=False if uncategorized else None)


@router.get(
    "/expenses/{expense_id}",
    response_model=Expense,
    summary="Get one expense",
    description="Return one expense owned by the requesting user.",
    response_description="The expense.",
    responses={
        200: {"description": "Expense found.", "content": {"application/json": {"example": EXPENSE_EXAMPLE}}},
        403: _error_response("Not the owner.", "Expense does not belong to the requesting user"),
        404: _error_response("Unknown expense.", "Expense not found"),
    },
)
async def get_expense(
    expense_id: str,
    user_id: str = Depends(get_requester_id),
    service: ValidationService = Depends(get_validation_service),
) -> Expense:
    """Get an expense by id."""
    try:
        return await service.get_owned(user_id, expense_id)
    except CategorizerError as exc:
        raise _http_error(exc) from exc


@router.put(
    "/expenses/{expense_id}/category",
    response_model=Expense,
    summary="Set an expense category manually",
    description=(
        "Commit a category chosen by the user. Sets `category` and `categorizedAt`; AI fields are left untouched.\n\n"
        "**Response:**\n"
        "- 200 OK: the updated expense.\n"
        "- 400 Bad Request: blank category.\n"
        "- 403 Forbidden / 404 Not Found."
    ),
    response_description="The updated expense.",
    responses={
        400: _error_response("Blank category.", "Category must not be empty"),
        403: _error_response("Not the owner.", "Expense does not belong to the requesting user"),
        404: _error_response("Unknown expense.", "Expense not found"),
    },
)
async def set_category(
    expense_id: str,
    payload: Any = Body(...),
    user_id: str = Depends(get_requester_id),
    service: ValidationService = Depends(get_validation_service),
) -> Expense:
    """Manually categorize an expense."""
    update = _parse_body(CategoryUpdate, payload)
    try:
        return await service.set_category(user_id, expense_id, update.category)
    except CategorizerError as exc:
        raise _http_error(exc) from exc


@router.post(
    "/expenses/validate",
    response_model=Expense,
    summary="Accept or reject an AI category suggestion",
    description=(
        "Accepting commits the suggestion as the category. Rejecting records the decision and, when a replacement "
        "`category` is given, commits it instead.\n\n"
        "**Request body:** `{ 'expenseId': str, 'validated': bool, 'category'?: str }`\n\n"
        "**Response:**\n"
        "- 200 OK: the updated expense.\n"
        "- 400 Bad Request: malformed body, or accepting an expense without a suggestion.\n"
        "- 403 Forbidden / 404 Not Found."
    ),
    response_description="The updated expense.",
    responses={
        200: {"description": "Decision recorded.", "content": {"application/json": {"example": EXPENSE_EXAMPLE}}},
        400: _error_response("Invalid request.", "Invalid request body: validated: Field required"),
        403: _error_response("Not the owner.", "Expense does not belong to the requesting user"),
        404: _error_response("Unknown expense.", "Expense not found"),
    },
)
async def validate_suggestion(
    payload: Any = Body(...),
    user_id: str = Depends(get_requester_id),
    service: ValidationService = Depends(get_validation_service),
) -> Expense:
    """Apply the user's decision on an AI suggestion."""
    request = _parse_body(ValidationRequest, payload)
    try:
        return await service.validate(user_id, request)
    except CategorizerError as exc:
        raise _http_error(exc) from exc
