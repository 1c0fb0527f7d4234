"""
Database and API schemas for the Nutrition Forms API

Persisted documents are stored with camelCase keys, one collection each:
- Form -> "forms"
- Response -> "responses"
- SchemaDefinitionDoc -> "schema_definitions"
"""

import re
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import DEFAULT_SHEET_NAME


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# --- Schema fields ---

class FieldType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"
    ENUM = "enum"
    FILE = "file"


class SchemaField(CamelModel):
    key: str
    label: str
    type: FieldType = FieldType.STRING
    required: bool = False
    validation_rules: Dict[str, Any] = Field(default_factory=dict, alias="validationRules")
    column_ref: Optional[str] = Field(default=None, alias="columnRef")
    enum_options: Optional[List[str]] = Field(default=None, alias="enumOptions")

    @field_validator("validation_rules")
    @classmethod
    def check_rules(cls, rules: Dict[str, Any]) -> Dict[str, Any]:
        for name in ("min", "max"):
            if name in rules and (isinstance(rules[name], bool) or not isinstance(rules[name], (int, float))):
                raise ValueError(f"{name} must be a number")
        for name in ("minLength", "maxLength"):
            if name in rules and (isinstance(rules[name], bool) or not isinstance(rules[name], int) or rules[name] < 0):
                raise ValueError(f"{name} must be a non-negative integer")
        if "pattern" in rules:
            if not isinstance(rules["pattern"], str):
                raise ValueError("pattern must be a string")
            try:
                re.compile(rules["pattern"])
            except re.error as e:
                raise ValueError(f"pattern is not a valid regular expression: {e}") from None
        return rules


class ExternalSchemaDefinition(CamelModel):
    version: int = Field(default=1, ge=1)
    fields: List[SchemaField] = Field(default_factory=list)


class SourceType(str, Enum):
    GOOGLE_SHEETS = "google-sheets"
    DATABASE = "database"


class ConnectedSourceConfig(CamelModel):
    id: str
    type: SourceType = SourceType.GOOGLE_SHEETS
    source_id: str = Field(..., alias="sourceId")
    sheet_name: Optional[str] = Field(default=None, alias="sheetName")

    @property
    def sheet(self) -> str:
        return self.sheet_name or DEFAULT_SHEET_NAME

    @classmethod
    def for_spreadsheet(cls, spreadsheet_id: str, sheet_name: Optional[str] = None) -> "ConnectedSourceConfig":
        return cls(
            id=spreadsheet_id,
            type=SourceType.GOOGLE_SHEETS,
            source_id=spreadsheet_id,
            sheet_name=sheet_name,
        )


class SchemaDefinitionDoc(CamelModel):
    id: Optional[str] = None
    connected_source_id: str = Field(..., alias="connectedSourceId")
    version: int = Field(..., ge=1)
    fields: List[SchemaField] = Field(default_factory=list)
    created_by: str = Field(..., alias="createdBy")
    created_at: str = Field(..., alias="createdAt")


# --- Forms and responses ---

class Form(CamelModel):
    id: Optional[str] = None
    title: str
    description: str
    schema_: Dict[str, Any] = Field(..., alias="schema")
    created_by: str = Field(..., alias="createdBy")
    created_at: str = Field(..., alias="createdAt")
    updated_at: str = Field(..., alias="updatedAt")
    is_active: bool = Field(default=True, alias="isActive")


class Response(CamelModel):
    id: Optional[str] = None
    form_id: str = Field(..., alias="formId")
    user_id: str = Field(..., alias="userId")
    response: Dict[str, Any]
    submitted_at: str = Field(..., alias="submittedAt")


# --- Request payloads ---

class CreateFormRequest(CamelModel):
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    schema_: Dict[str, Any] = Field(..., alias="schema")


class UpdateFormRequest(CreateFormRequest):
    is_active: Optional[bool] = Field(default=None, alias="isActive")


class CreateResponseRequest(CamelModel):
    form_id: str = Field(..., alias="formId", min_length=1)
    response: Dict[str, Any]


class ImportSchemaRequest(CamelModel):
    spreadsheet_id: str = Field(..., alias="spreadsheetId", min_length=1)
    sheet_name: Optional[str] = Field(default=None, alias="sheetName")


class SaveSchemaRequest(CamelModel):
    # versions are keyed by spreadsheet only; submissions always use the default sheet
    spreadsheet_id: str = Field(..., alias="spreadsheetId", min_length=1)
    fields: List[SchemaField]
