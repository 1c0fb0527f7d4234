from unittest.mock import MagicMock

import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from auth import CurrentUser, Role, get_current_user
from config import Settings, get_settings
from connectors import GoogleSheetsConnector
from database import get_db

SPREADSHEET_ID = "sheet-123"

ADMIN = CurrentUser(uid="admin-1", email="admin@example.com", role=Role.ADMIN)
END_USER = CurrentUser(uid="user-1", email="user@example.com", role=Role.END_USER)


def sheet_values(sheets_service):
    """The mock behind sheets_service.spreadsheets().values()."""
    return sheets_service.spreadsheets.return_value.values.return_value


@pytest.fixture
def db():
    return mongomock.MongoClient()["forms_app_test"]


@pytest.fixture
def sheets_service():
    return MagicMock()


@pytest.fixture
def drive_service():
    return MagicMock()


@pytest.fixture
def connector(sheets_service, drive_service):
    return GoogleSheetsConnector(sheets_service=sheets_service, drive_service=drive_service)


@pytest.fixture
def settings():
    return Settings(default_spreadsheet_id=SPREADSHEET_ID)


@pytest.fixture
def client(db, connector, settings):
    app = main.app
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_current_user] = lambda: ADMIN
    app.dependency_overrides[main.get_connector_factory] = lambda: (lambda config: connector)
    app.dependency_overrides[main.get_sheets_connector] = lambda: connector
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def as_user(client):
    """Switch the authenticated user for the rest of the test."""

    def _as(user):
        if user is None:
            main.app.dependency_overrides.pop(get_current_user, None)
        else:
            main.app.dependency_overrides[get_current_user] = lambda: user

    return _as
