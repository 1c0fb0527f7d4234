"""External data source connectors.

A connector exposes the header row of a row-oriented source as schema
fields and supports row reads and writes keyed by normalized field keys.
Only Google Sheets is implemented.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from google.auth.exceptions import GoogleAuthError
from google.oauth2.service_account import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from config import Settings, get_settings
from errors import ConfigurationError, ConnectorError, ConnectorReadError, NotFoundError, ValidationError
from schemas import ConnectedSourceConfig, ExternalSchemaDefinition, FieldType, SchemaField, SourceType

logger = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive.readonly",
]
SPREADSHEET_MIME_TYPE = "application/vnd.google-apps.spreadsheet"
TOKEN_URI = "https://oauth2.googleapis.com/token"

_NON_ALNUM = re.compile(r"[^a-z0-9]+")

# Reserved trailing column holding the stable key of each appended row
ROW_ID_HEADER = "_row_id"


def normalize_key(text: str) -> str:
    """Lowercase, collapse runs outside [a-z0-9] into one '_', trim '_'."""
    return _NON_ALNUM.sub("_", (text or "").lower()).strip("_")


def _header_text(raw: Any) -> str:
    return "" if raw is None else str(raw)


def column_key(header: str, index: int) -> str:
    # empty headers are keyed by their placeholder label
    return normalize_key(header) or normalize_key(f"Column {index + 1}")


def fields_from_header(header_row: List[Any]) -> List[SchemaField]:
    fields = []
    for index, raw in enumerate(header_row):
        header = _header_text(raw)
        if header == ROW_ID_HEADER:
            continue
        fields.append(
            SchemaField(
                key=column_key(header, index),
                label=header or f"Column {index + 1}",
                type=FieldType.STRING,
                required=False,
                column_ref=header,
            )
        )
    return fields


def cell_value(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(map(str, value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


def a1_range(sheet_name: str, ref: Optional[str] = None) -> str:
    quoted = "'{}'".format(sheet_name.replace("'", "''"))
    return f"{quoted}!{ref}" if ref else quoted


def column_letter(index: int) -> str:
    """0-based column index to its A1 letters (0 -> A, 26 -> AA)."""
    letters = ""
    index += 1
    while index:
        index, rem = divmod(index - 1, 26)
        letters = chr(ord("A") + rem) + letters
    return letters


def row_id_column(header_row: List[Any]) -> Optional[int]:
    for index, raw in enumerate(header_row):
        if _header_text(raw) == ROW_ID_HEADER:
            return index
    return None


def get_google_services(settings: Optional[Settings] = None) -> Tuple[Any, Any]:
    """Build Sheets and Drive services from service account credentials."""
    settings = settings or get_settings()
    try:
        if settings.google_service_account_json:
            raw = settings.google_service_account_json.strip()
            # Allow passing either full JSON string or a file path
            if raw.startswith("{"):
                creds = Credentials.from_service_account_info(json.loads(raw), scopes=SCOPES)
            else:
                creds = Credentials.from_service_account_file(raw, scopes=SCOPES)
        elif settings.google_service_account_email and settings.google_private_key:
            info = {
                "type": "service_account",
                "client_email": settings.google_service_account_email,
                "private_key": settings.google_private_key,
                "token_uri": TOKEN_URI,
            }
            creds = Credentials.from_service_account_info(info, scopes=SCOPES)
        else:
            raise ConfigurationError("Missing Google service account credentials")
    except (ValueError, OSError) as e:
        logger.error("Invalid Google service account credentials: %s", e)
        raise ConfigurationError("Invalid Google service account credentials") from e

    sheets_service = build("sheets", "v4", credentials=creds, cache_discovery=False)
    drive_service = build("drive", "v3", credentials=creds, cache_discovery=False)
    return sheets_service, drive_service


@contextmanager
def google_errors(action: str, error_cls=ConnectorError):
    try:
        yield
    except (HttpError, GoogleAuthError, OSError) as e:
        logger.error("Google API call failed to %s: %s", action, e)
        raise error_cls(f"Failed to {action}") from e


class Connector(ABC):
    """Contract for row-oriented external sources."""

    @abstractmethod
    def read_schema(self, config: ConnectedSourceConfig) -> ExternalSchemaDefinition:
        ...

    @abstractmethod
    def read_rows(self, config: ConnectedSourceConfig) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def append_row(self, config: ConnectedSourceConfig, row: Dict[str, Any]) -> Dict[str, str]:
        ...

    @abstractmethod
    def update_row(self, config: ConnectedSourceConfig, external_row_id: str, row: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def delete_row(self, config: ConnectedSourceConfig, external_row_id: str) -> None:
        ...


class GoogleSheetsConnector(Connector):
    def __init__(self, sheets_service=None, drive_service=None):
        self._sheets = sheets_service
        self._drive = drive_service

    def _services(self) -> None:
        if self._sheets is None or self._drive is None:
            sheets_service, drive_service = get_google_services()
            self._sheets = self._sheets or sheets_service
            self._drive = self._drive or drive_service

    @property
    def sheets(self):
        self._services()
        return self._sheets

    @property
    def drive(self):
        self._services()
        return self._drive

    def _values(self):
        return self.sheets.spreadsheets().values()

    # --- Schema and rows ---

    def _read_header(self, config: ConnectedSourceConfig) -> List[str]:
        with google_errors("read schema from Google Sheets", ConnectorReadError):
            result = self._values().get(
                spreadsheetId=config.source_id,
                range=a1_range(config.sheet, "1:1"),
            ).execute()
        values = result.get("values") or []
        return [_header_text(raw) for raw in values[0]] if values else []

    def read_schema(self, config: ConnectedSourceConfig) -> ExternalSchemaDefinition:
        header_row = self._read_header(config)
        return ExternalSchemaDefinition(version=1, fields=fields_from_header(header_row))

    def read_rows(self, config: ConnectedSourceConfig) -> List[Dict[str, Any]]:
        with google_errors("read rows from Google Sheets", ConnectorReadError):
            result = self._values().get(
                spreadsheetId=config.source_id,
                range=a1_range(config.sheet),
            ).execute()
        rows = result.get("values") or []
        if len(rows) < 2:
            return []

        header, data_rows = rows[0], rows[1:]
        id_index = row_id_column(header)
        columns = [
            (index, column_key(_header_text(raw), index))
            for index, raw in enumerate(header)
            if index != id_index
        ]
        records = []
        for row in data_rows:
            record = {}
            for index, key in columns:
                value = row[index] if index < len(row) else ""
                record[key] = "" if value is None else value
            records.append(record)
        return records

    def _project(self, header_row: List[str], id_index: int, row: Dict[str, Any], row_key: str) -> List[Any]:
        values = []
        for index in range(max(len(header_row), id_index + 1)):
            if index == id_index:
                values.append(row_key)
            elif index < len(header_row):
                values.append(cell_value(row.get(column_key(header_row[index], index))))
            else:
                values.append("")
        return values

    def _ensure_row_id_column(self, config: ConnectedSourceConfig, header_row: List[str]) -> int:
        id_index = row_id_column(header_row)
        if id_index is not None:
            return id_index
        id_index = len(header_row)
        with google_errors("prepare Google Sheets row id column"):
            self._values().update(
                spreadsheetId=config.source_id,
                range=a1_range(config.sheet, f"{column_letter(id_index)}1"),
                valueInputOption="RAW",
                body={"values": [[ROW_ID_HEADER]]},
            ).execute()
        logger.info("Added %s column to %s of spreadsheet %s", ROW_ID_HEADER, config.sheet, config.source_id)
        return id_index

    def _locate_row(self, config: ConnectedSourceConfig, id_index: Optional[int], external_row_id: str) -> int:
        """Current 1-based row number of the row carrying the given key."""
        if not external_row_id:
            raise ValidationError("Missing external row id")
        if id_index is None:
            raise NotFoundError("Row not found")
        letter = column_letter(id_index)
        with google_errors("look up row in Google Sheets", ConnectorReadError):
            result = self._values().get(
                spreadsheetId=config.source_id,
                range=a1_range(config.sheet, f"{letter}2:{letter}"),
                majorDimension="COLUMNS",
            ).execute()
        values = result.get("values") or []
        keys = values[0] if values else []
        for offset, key in enumerate(keys):
            if key == external_row_id:
                return offset + 2
        raise NotFoundError("Row not found")

    # --- Writes ---

    def append_row(self, config: ConnectedSourceConfig, row: Dict[str, Any]) -> Dict[str, str]:
        header_row = self._read_header(config)
        id_index = self._ensure_row_id_column(config, header_row)
        external_row_id = uuid4().hex
        values = self._project(header_row, id_index, row, external_row_id)
        with google_errors("append row to Google Sheets"):
            result = self._values().append(
                spreadsheetId=config.source_id,
                range=a1_range(config.sheet, "A1"),
                valueInputOption="RAW",
                insertDataOption="INSERT_ROWS",
                body={"values": [values]},
            ).execute()

        updated_range = (result.get("updates") or {}).get("updatedRange")
        logger.info("Appended row %s at %s of spreadsheet %s", external_row_id, updated_range, config.source_id)
        return {"externalRowId": external_row_id}

    def update_row(self, config: ConnectedSourceConfig, external_row_id: str, row: Dict[str, Any]) -> None:
        header_row = self._read_header(config)
        id_index = row_id_column(header_row)
        row_number = self._locate_row(config, id_index, external_row_id)
        values = self._project(header_row, id_index, row, external_row_id)
        with google_errors("update row in Google Sheets"):
            self._values().update(
                spreadsheetId=config.source_id,
                range=a1_range(config.sheet, f"A{row_number}"),
                valueInputOption="RAW",
                body={"values": [values]},
            ).execute()

    def delete_row(self, config: ConnectedSourceConfig, external_row_id: str) -> None:
        # Blanking the row drops its key, so the id no longer resolves
        header_row = self._read_header(config)
        row_number = self._locate_row(config, row_id_column(header_row), external_row_id)
        with google_errors("delete row from Google Sheets"):
            self._values().clear(
                spreadsheetId=config.source_id,
                range=a1_range(config.sheet, f"{row_number}:{row_number}"),
                body={},
            ).execute()

    # --- Discovery ---

    def list_spreadsheets(self) -> List[Dict[str, Any]]:
        with google_errors("list spreadsheets", ConnectorReadError):
            result = self.drive.files().list(
                q=f"mimeType='{SPREADSHEET_MIME_TYPE}'",
                fields="files(id,name,createdTime,modifiedTime,owners)",
                orderBy="modifiedTime desc",
                pageSize=100,
            ).execute()
        sheets = []
        for f in result.get("files") or []:
            owners = f.get("owners") or []
            sheets.append({
                "id": f.get("id"),
                "name": f.get("name"),
                "createdTime": f.get("createdTime"),
                "modifiedTime": f.get("modifiedTime"),
                "owner": (owners[0].get("displayName") if owners else None) or "Unknown",
            })
        return sheets

    def list_sheet_tabs(self, spreadsheet_id: str) -> List[Dict[str, Any]]:
        with google_errors("get sheet names", ConnectorReadError):
            result = self.sheets.spreadsheets().get(
                spreadsheetId=spreadsheet_id,
                fields="sheets.properties",
            ).execute()
        tabs = []
        for sheet in result.get("sheets") or []:
            props = sheet.get("properties") or {}
            tabs.append({
                "name": props.get("title") or "Untitled",
                "sheetId": props.get("sheetId"),
                "index": props.get("index"),
            })
        return tabs


def connector_for(config: ConnectedSourceConfig) -> Connector:
    if config.type == SourceType.GOOGLE_SHEETS:
        return GoogleSheetsConnector()
    raise ValidationError(f"Unsupported source type: {config.type.value}")
