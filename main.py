import csv
import io
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional

import qrcode
from fastapi import Body, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import CurrentUser, get_current_user, init_firebase, require_admin
from config import Settings, get_settings, require
from connectors import Connector, GoogleSheetsConnector, connector_for, normalize_key
from database import close_db, get_db
from errors import AppError, NotFoundError
from logging_setup import configure_logging
from repositories import FormRepository, ResponseRepository, SchemaRepository
from schemas import (
    ConnectedSourceConfig,
    CreateFormRequest,
    CreateResponseRequest,
    ImportSchemaRequest,
    SaveSchemaRequest,
    UpdateFormRequest,
)
from validation import validate_submission

# --- Config ---
settings = get_settings()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

init_firebase(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    close_db()


app = FastAPI(title="Nutrition Forms API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Errors ---

@app.exception_handler(AppError)
async def handle_app_error(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message, exc_info=exc)
    else:
        logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def handle_request_validation(request: Request, exc: RequestValidationError):
    logger.info("%s %s invalid payload: %s", request.method, request.url.path, exc.errors())
    return JSONResponse(status_code=400, content={"error": "Invalid payload"})


@app.exception_handler(StarletteHTTPException)
async def handle_http_exception(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(Exception)
async def handle_unexpected(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# --- Dependencies ---

def get_connector_factory() -> Callable[[ConnectedSourceConfig], Connector]:
    return connector_for


def get_sheets_connector() -> GoogleSheetsConnector:
    return GoogleSheetsConnector()


def default_source(settings: Settings) -> ConnectedSourceConfig:
    spreadsheet_id = require(settings.default_spreadsheet_id, "DEFAULT_SPREADSHEET_ID")
    return ConnectedSourceConfig.for_spreadsheet(spreadsheet_id)


def dump(model) -> Dict[str, Any]:
    return model.model_dump(by_alias=True, mode="json")


# --- Routes ---

@app.get("/")
def read_root():
    return {"message": "Nutrition Forms API running"}


@app.get("/test")
def test_database(settings: Settings = Depends(get_settings)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if settings.database_url else "❌ Not Set",
        "database_name": settings.database_name,
        "spreadsheet_id": "✅ Set" if settings.default_spreadsheet_id else "❌ Not Set",
        "google_credentials": "✅ Set" if settings.has_google_credentials else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        db = get_db()
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "✅ Connected"
        response["connection_status"] = "Connected"
    except (AppError, PyMongoError) as e:
        logger.warning("Database diagnostics failed: %s", e)
        response["database"] = "❌ Error"
    return response


# Forms

@app.get("/api/forms")
def list_forms(active: bool = False, db: Database = Depends(get_db)):
    return [dump(form) for form in FormRepository(db).list(active_only=active)]


@app.post("/api/forms", status_code=201)
def create_form(
    payload: CreateFormRequest,
    user: CurrentUser = Depends(require_admin),
    db: Database = Depends(get_db),
):
    return dump(FormRepository(db).create(payload, created_by=user.uid))


@app.post("/api/forms/submit")
def submit_to_sheet(
    payload: Dict[str, Any] = Body(...),
    user: CurrentUser = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    db: Database = Depends(get_db),
    connector_factory: Callable[[ConnectedSourceConfig], Connector] = Depends(get_connector_factory),
):
    config = default_source(settings)
    latest = SchemaRepository(db).get_latest_by_source(config.source_id)
    row = validate_submission(latest.fields, payload) if latest else payload

    result = connector_factory(config).append_row(config, row)
    logger.info("User %s submitted row %s", user.uid, result["externalRowId"])
    return {"externalRowId": result["externalRowId"]}


@app.get("/api/forms/{form_id}")
def get_form(form_id: str, user: CurrentUser = Depends(require_admin), db: Database = Depends(get_db)):
    return dump(FormRepository(db).get(form_id))


@app.put("/api/forms/{form_id}")
def update_form(
    form_id: str,
    payload: UpdateFormRequest,
    user: CurrentUser = Depends(require_admin),
    db: Database = Depends(get_db),
):
    FormRepository(db).update(form_id, payload)
    return {"ok": True}


@app.delete("/api/forms/{form_id}")
def delete_form(form_id: str, user: CurrentUser = Depends(require_admin), db: Database = Depends(get_db)):
    FormRepository(db).delete(form_id)
    return {"ok": True}


@app.get("/api/forms/{form_id}/export")
def export_responses(form_id: str, user: CurrentUser = Depends(require_admin), db: Database = Depends(get_db)):
    form = FormRepository(db).get(form_id)
    responses = ResponseRepository(db).list(form_id=form_id)
    if not responses:
        raise NotFoundError("No responses found for this form")

    columns: List[str] = []
    for r in responses:
        for key in r.response:
            if key not in columns:
                columns.append(key)

    def iter_rows():
        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow(["Response ID", "User ID", "Submitted At"] + columns)
        yield output.getvalue(); output.seek(0); output.truncate(0)
        for r in responses:
            row = [r.id, r.user_id, r.submitted_at]
            for key in columns:
                val = r.response.get(key, "")
                if isinstance(val, list):
                    val = ", ".join(map(str, val))
                row.append(val)
            writer.writerow(row)
            yield output.getvalue(); output.seek(0); output.truncate(0)

    filename = f"{normalize_key(form.title) or 'form'}_responses.csv"
    return StreamingResponse(
        iter_rows(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/forms/{form_id}/qr")
def form_qr(form_id: str, settings: Settings = Depends(get_settings), db: Database = Depends(get_db)):
    FormRepository(db).get(form_id, active_only=True)
    url = f"{settings.public_base_url.rstrip('/')}/dashboard/user/forms/{form_id}"
    img = qrcode.make(url)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    buf.seek(0)
    return StreamingResponse(buf, media_type="image/png")


# Responses

@app.post("/api/responses", status_code=201)
def create_response(
    payload: CreateResponseRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    created = ResponseRepository(db).create(payload.form_id, user.uid, payload.response)
    return dump(created)


@app.get("/api/responses")
def list_responses(
    formId: Optional[str] = None,
    user: CurrentUser = Depends(require_admin),
    db: Database = Depends(get_db),
):
    repo = ResponseRepository(db)
    responses = repo.list(form_id=formId)
    if formId:
        counts = {formId: len(responses)}
    else:
        counts = {form.id: repo.count_by_form(form.id) for form in FormRepository(db).list()}
    return {"responses": [dump(r) for r in responses], "counts": counts}


# Schema

@app.get("/api/schema")
def get_schema(settings: Settings = Depends(get_settings), db: Database = Depends(get_db)):
    config = default_source(settings)
    latest = SchemaRepository(db).get_latest_by_source(config.source_id)
    if latest is None:
        return {"fields": [], "version": None}
    return {"fields": [dump(f) for f in latest.fields], "version": latest.version}


@app.post("/api/schema/save")
def save_schema(
    payload: SaveSchemaRequest,
    user: CurrentUser = Depends(require_admin),
    db: Database = Depends(get_db),
):
    created = SchemaRepository(db).create_next_version(payload.spreadsheet_id, payload.fields, created_by=user.uid)
    return {"id": created.id, "version": created.version}


@app.post("/api/schema/import")
def import_schema(
    payload: ImportSchemaRequest,
    user: CurrentUser = Depends(require_admin),
    connector_factory: Callable[[ConnectedSourceConfig], Connector] = Depends(get_connector_factory),
):
    config = ConnectedSourceConfig.for_spreadsheet(payload.spreadsheet_id, payload.sheet_name)
    schema = connector_factory(config).read_schema(config)
    return {"fields": [dump(f) for f in schema.fields]}


# Spreadsheets

@app.get("/api/sheets/list")
def list_spreadsheets(
    user: CurrentUser = Depends(require_admin),
    connector: GoogleSheetsConnector = Depends(get_sheets_connector),
):
    return {"sheets": connector.list_spreadsheets()}


@app.get("/api/sheets/{spreadsheet_id}/sheets")
def list_sheet_tabs(
    spreadsheet_id: str,
    user: CurrentUser = Depends(require_admin),
    connector: GoogleSheetsConnector = Depends(get_sheets_connector),
):
    return {"sheets": connector.list_sheet_tabs(spreadsheet_id)}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.port)
