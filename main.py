import logging
from typing import Any, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import get_settings
from database import SessionLocal, init_db
from models import TransactionType
from periods import Period, resolve_period
from reports import LedgerEntry
from schemas import (
    MISSING_FIELDS_MESSAGE,
    CategoryFields,
    CategoryIn,
    SettingsIn,
    TransactionIn,
    TransactionUpdateIn,
    describe_validation_error,
    require_fields,
)
from services import (
    CategoryService,
    ConflictError,
    ImportService,
    NotFoundError,
    ReportService,
    SettingsService,
    TransactionFilters,
    TransactionService,
    category_to_dict,
    local_timezone,
    local_today,
    transaction_to_dict,
)
from spreadsheets import export_csv, export_xlsx, parse_upload
from views import (
    SORT_FIELDS,
    TransactionQuery,
    apply_query,
    distinct_categories,
    next_sort,
)


logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Personal Finance Tracker")

TRANSACTION_FIELDS = ("userId", "description", "category", "amount", "type")
TRANSACTION_UPDATE_FIELDS = ("description", "category", "amount", "type")
CATEGORY_FIELDS = ("userId", "name", "type")
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@app.on_event("startup")
def startup_event():
    init_db()
    logger.info("startup: tables ensured")


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        {"message": exc.detail}, status_code=exc.status_code, headers=exc.headers
    )


def validation_message(exc: RequestValidationError) -> str:
    for error in exc.errors():
        if error.get("type") == "missing":
            return MISSING_FIELDS_MESSAGE
    return "Invalid request"


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({"message": validation_message(exc)}, status_code=400)


def http_error(db: Session, exc: Exception, action: str) -> HTTPException:
    db.rollback()
    if isinstance(exc, HTTPException):
        return exc
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=describe_validation_error(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    logger.exception(f"{action}_failed")
    return HTTPException(status_code=500, detail="Internal Server Error")


async def json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as exc:
        raise ValueError("Request body must be valid JSON") from exc


def required_param(request: Request, name: str, message: str) -> str:
    value = (request.query_params.get(name) or "").strip()
    if not value:
        raise HTTPException(status_code=400, detail=message)
    return value


def expected_version(request: Request) -> Optional[int]:
    raw = request.headers.get("If-Match")
    if not raw:
        return None
    value = raw.strip().removeprefix("W/").strip('"')
    try:
        return int(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid If-Match header") from exc


def etag(version: int) -> dict[str, str]:
    return {"ETag": f'"{version}"'}


def period_from_request(request: Request) -> Period:
    period_slug = request.query_params.get("period")
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    try:
        return resolve_period(period_slug, start, end, today=local_today())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def filters_from_request(request: Request) -> TransactionFilters:
    user_id = (request.query_params.get("userId") or "").strip() or None
    period = None
    if request.query_params.get("period"):
        period = period_from_request(request)
    return TransactionFilters(user_id=user_id, period=period)


def query_from_request(request: Request) -> Optional[TransactionQuery]:
    params = request.query_params
    keys = ("q", "type", "category", "sort", "direction")
    if not any(key in params for key in keys):
        return None
    type_param = (params.get("type") or "").strip()
    try:
        txn_type = (
            TransactionType.parse(type_param)
            if type_param and type_param.upper() != "ALL"
            else None
        )
        return TransactionQuery(
            search=params.get("q") or None,
            type=txn_type,
            categories=[c for c in params.getlist("category") if c],
            sort_field=params.get("sort") or "createdAt",
            sort_direction=(params.get("direction") or "desc").lower(),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/transactions", status_code=201)
async def create_transaction(request: Request, db: Session = Depends(get_db)):
    try:
        body = require_fields(await json_body(request), TRANSACTION_FIELDS)
        data = TransactionIn.model_validate(body)
        txn = TransactionService(db).create(data)
    except Exception as exc:
        raise http_error(db, exc, "transaction_create") from exc
    return JSONResponse(
        transaction_to_dict(txn), status_code=201, headers=etag(txn.version)
    )


@app.get("/transactions")
def list_transactions(request: Request, db: Session = Depends(get_db)):
    filters = filters_from_request(request)
    query = query_from_request(request)
    try:
        txns = TransactionService(db).list(filters)
        if query is not None:
            by_id = {txn.id: txn for txn in txns}
            entries = apply_query(
                [LedgerEntry.from_transaction(txn) for txn in txns], query
            )
            txns = [by_id[entry.id] for entry in entries]
    except Exception as exc:
        raise http_error(db, exc, "transaction_list") from exc
    return [transaction_to_dict(txn) for txn in txns]


@app.get("/transactions/filters")
def transaction_filters(request: Request, db: Session = Depends(get_db)):
    filters = filters_from_request(request)
    try:
        entries = TransactionService(db).entries(filters)
    except Exception as exc:
        raise http_error(db, exc, "transaction_filters") from exc
    options: dict[str, object] = {
        "categories": distinct_categories(entries),
        "types": ["ALL"] + [t.value for t in TransactionType],
        "sortFields": list(SORT_FIELDS),
    }
    clicked = request.query_params.get("toggle")
    if clicked:
        try:
            field, direction = next_sort(
                request.query_params.get("sort") or "createdAt",
                (request.query_params.get("direction") or "desc").lower(),
                clicked,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        options["nextSort"] = {"sort": field, "direction": direction}
    return options


@app.put("/transactions")
async def update_transaction(request: Request, db: Session = Depends(get_db)):
    transaction_id = required_param(request, "id", "Transaction ID is required")
    version = expected_version(request)
    try:
        body = require_fields(await json_body(request), TRANSACTION_UPDATE_FIELDS)
        data = TransactionUpdateIn.model_validate(body)
        txn = TransactionService(db).update(transaction_id, data, version)
    except Exception as exc:
        raise http_error(db, exc, "transaction_update") from exc
    return JSONResponse(transaction_to_dict(txn), headers=etag(txn.version))


@app.delete("/transactions")
def delete_transaction(request: Request, db: Session = Depends(get_db)):
    transaction_id = required_param(request, "id", "Transaction ID is required")
    version = expected_version(request)
    try:
        TransactionService(db).delete(transaction_id, version)
    except Exception as exc:
        raise http_error(db, exc, "transaction_delete") from exc
    return {"message": "Transaction deleted successfully"}


@app.get("/transactions/export.csv")
def export_transactions_csv(request: Request, db: Session = Depends(get_db)):
    filters = filters_from_request(request)
    query = query_from_request(request)
    try:
        entries = TransactionService(db).entries(filters, query)
        csv_text = export_csv(entries, tz=local_timezone())
    except Exception as exc:
        raise http_error(db, exc, "transaction_export") from exc
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="transactions.csv"'},
    )


@app.get("/transactions/export.xlsx")
def export_transactions_xlsx(request: Request, db: Session = Depends(get_db)):
    filters = filters_from_request(request)
    query = query_from_request(request)
    try:
        entries = TransactionService(db).entries(filters, query)
        content = export_xlsx(entries, tz=local_timezone())
    except Exception as exc:
        raise http_error(db, exc, "transaction_export") from exc
    return Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": 'attachment; filename="transactions.xlsx"'},
    )


@app.post("/transactions/import/preview")
async def import_preview(
    user_id: str = Form(..., alias="userId"),
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
):
    try:
        rows, errors = parse_upload(file.filename or "", await file.read())
        preview_rows, match_errors = ImportService(db, user_id).preview(rows)
    except Exception as exc:
        raise http_error(db, exc, "transaction_import_preview") from exc
    return {"rows": preview_rows, "errors": errors + match_errors}


@app.post("/transactions/import", status_code=201)
async def import_commit(
    user_id: str = Form(..., alias="userId"),
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
):
    try:
        rows, errors = parse_upload(file.filename or "", await file.read())
        if errors:
            raise ValueError("; ".join(errors))
        created = ImportService(db, user_id).commit(rows)
    except Exception as exc:
        raise http_error(db, exc, "transaction_import") from exc
    return JSONResponse(
        {
            "message": f"Successfully imported {len(created)} transactions",
            "imported": len(created),
        },
        status_code=201,
    )


@app.get("/categories")
def list_categories(request: Request, db: Session = Depends(get_db)):
    user_id = (request.query_params.get("userId") or "").strip() or None
    type_param = (request.query_params.get("type") or "").strip()
    try:
        txn_type = TransactionType.parse(type_param) if type_param else None
        categories = CategoryService(db, user_id).list_all(txn_type)
    except Exception as exc:
        raise http_error(db, exc, "category_list") from exc
    return [category_to_dict(category) for category in categories]


@app.get("/categories/summary")
def category_summary(request: Request, db: Session = Depends(get_db)):
    user_id = required_param(request, "userId", "User ID is required")
    try:
        return ReportService(db, user_id).category_summary()
    except Exception as exc:
        raise http_error(db, exc, "category_summary") from exc


@app.post("/categories", status_code=201)
async def create_category(request: Request, db: Session = Depends(get_db)):
    try:
        body = require_fields(await json_body(request), CATEGORY_FIELDS)
        data = CategoryIn.model_validate(body)
        category = CategoryService(db).create(data)
    except Exception as exc:
        raise http_error(db, exc, "category_create") from exc
    return JSONResponse(category_to_dict(category), status_code=201)


@app.put("/categories")
async def update_category(request: Request, db: Session = Depends(get_db)):
    category_id = required_param(request, "id", "Category ID is required")
    try:
        body = require_fields(await json_body(request), ("name", "type"))
        data = CategoryFields.model_validate(body)
        category = CategoryService(db).update(category_id, data)
    except Exception as exc:
        raise http_error(db, exc, "category_update") from exc
    return category_to_dict(category)


@app.delete("/categories")
def delete_category(request: Request, db: Session = Depends(get_db)):
    category_id = required_param(request, "id", "Category ID is required")
    try:
        CategoryService(db).delete(category_id)
    except Exception as exc:
        raise http_error(db, exc, "category_delete") from exc
    return {"message": "Category deleted successfully"}


@app.get("/dashboard")
def dashboard(request: Request, db: Session = Depends(get_db)):
    user_id = (request.query_params.get("userId") or "").strip() or None
    period = period_from_request(request)
    try:
        return ReportService(db, user_id).dashboard(period)
    except Exception as exc:
        raise http_error(db, exc, "dashboard") from exc


@app.get("/reports")
def reports(request: Request, db: Session = Depends(get_db)):
    user_id = (request.query_params.get("userId") or "").strip() or None
    period = period_from_request(request)
    report_type = request.query_params.get("reportType") or "income-expense"
    try:
        return ReportService(db, user_id).report(period, report_type)
    except Exception as exc:
        raise http_error(db, exc, "report") from exc


def settings_to_dict(record) -> dict[str, object]:
    return {
        "userId": record.user_id,
        "darkMode": record.dark_mode,
        "currency": record.currency.value,
        "notificationsEnabled": record.notifications_enabled,
        "budgetAlertThreshold": record.budget_alert_threshold,
    }


@app.get("/settings")
def get_user_settings(request: Request, db: Session = Depends(get_db)):
    user_id = required_param(request, "userId", "User ID is required")
    try:
        record = SettingsService(db, user_id).get()
    except Exception as exc:
        raise http_error(db, exc, "settings_get") from exc
    return settings_to_dict(record)


@app.put("/settings")
async def update_user_settings(request: Request, db: Session = Depends(get_db)):
    user_id = required_param(request, "userId", "User ID is required")
    try:
        data = SettingsIn.model_validate(await json_body(request))
        record = SettingsService(db, user_id).update(data)
    except Exception as exc:
        raise http_error(db, exc, "settings_update") from exc
    return settings_to_dict(record)


def main():
    import uvicorn

    settings = get_settings()
    uvicorn.run("main:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    main()
