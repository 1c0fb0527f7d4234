from unittest.mock import patch

from config import Settings, get_settings
import main
from schemas import SaveSchemaRequest

from conftest import END_USER, SPREADSHEET_ID, sheet_values

FORM = {
    "title": "Weekly Nutrition Check-in",
    "description": "Tell us what you ate this week",
    "schema": {"pages": [{"elements": [{"type": "text", "name": "breakfast"}]}]},
}


def create_form(client, **overrides):
    response = client.post("/api/forms", json={**FORM, **overrides})
    assert response.status_code == 201
    return response.json()


def test_root(client):
    assert client.get("/").json() == {"message": "Nutrition Forms API running"}


# Forms

def test_create_and_get_form(client):
    created = create_form(client)

    assert created["isActive"] is True
    assert created["createdBy"] == "admin-1"
    assert created["createdAt"] == created["updatedAt"]

    fetched = client.get(f"/api/forms/{created['id']}").json()
    assert fetched["title"] == FORM["title"]
    assert fetched["schema"] == FORM["schema"]


def test_create_form_requires_all_fields(client):
    response = client.post("/api/forms", json={"title": "No description", "schema": {}})

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid payload"}


def test_invalid_json_is_a_bad_request(client):
    response = client.post("/api/forms", content=b"{not json", headers={"content-type": "application/json"})

    assert response.status_code == 400
    assert "error" in response.json()


def test_list_forms_filters_active(client):
    active = create_form(client)
    inactive = create_form(client, title="Old form")
    client.put(f"/api/forms/{inactive['id']}", json={**FORM, "title": "Old form", "isActive": False})

    all_ids = {f["id"] for f in client.get("/api/forms").json()}
    active_ids = {f["id"] for f in client.get("/api/forms", params={"active": "true"}).json()}

    assert all_ids == {active["id"], inactive["id"]}
    assert active_ids == {active["id"]}


def test_update_form_replaces_fields(client):
    created = create_form(client)
    payload = {"title": "Renamed", "description": "New text", "schema": {"pages": []}}

    response = client.put(f"/api/forms/{created['id']}", json=payload)

    assert response.json() == {"ok": True}
    fetched = client.get(f"/api/forms/{created['id']}").json()
    assert fetched["title"] == "Renamed"
    assert fetched["schema"] == {"pages": []}
    assert fetched["isActive"] is True
    assert fetched["updatedAt"] >= created["updatedAt"]


def test_update_and_delete_missing_form(client):
    missing = "65a000000000000000000000"

    assert client.put(f"/api/forms/{missing}", json=FORM).status_code == 404
    assert client.delete(f"/api/forms/{missing}").status_code == 404
    assert client.get("/api/forms/not-an-object-id").status_code == 404


def test_delete_form(client, db):
    created = create_form(client)

    assert client.delete(f"/api/forms/{created['id']}").json() == {"ok": True}
    assert db["forms"].count_documents({}) == 0
    assert client.get(f"/api/forms/{created['id']}").json() == {"error": "Form not found"}


def test_form_mutation_requires_admin(client, as_user):
    as_user(END_USER)

    response = client.post("/api/forms", json=FORM)

    assert response.status_code == 403
    assert response.json() == {"error": "Forbidden"}


def test_unauthenticated_requests_are_rejected(client, as_user):
    as_user(None)

    response = client.post("/api/responses", json={"formId": "x", "response": {}})

    assert response.status_code == 401
    assert response.json() == {"error": "Missing Authorization header"}


# Responses

def test_submit_response(client, as_user, db):
    form = create_form(client)
    as_user(END_USER)

    response = client.post("/api/responses", json={"formId": form["id"], "response": {"breakfast": "oats"}})

    assert response.status_code == 201
    body = response.json()
    assert body["formId"] == form["id"]
    assert body["userId"] == "user-1"
    assert body["response"] == {"breakfast": "oats"}
    assert db["responses"].count_documents({"formId": form["id"]}) == 1


def test_response_to_inactive_form_is_rejected(client, as_user, db):
    form = create_form(client)
    client.put(f"/api/forms/{form['id']}", json={**FORM, "isActive": False})
    as_user(END_USER)

    response = client.post("/api/responses", json={"formId": form["id"], "response": {"breakfast": "oats"}})

    assert response.status_code == 404
    assert response.json() == {"error": "Form not found or inactive"}
    assert db["responses"].count_documents({}) == 0


def test_response_to_missing_form_is_rejected(client, db):
    response = client.post("/api/responses", json={"formId": "65a000000000000000000000", "response": {"a": 1}})

    assert response.status_code == 404
    assert db["responses"].count_documents({}) == 0


def test_list_responses_with_counts(client):
    first = create_form(client)
    second = create_form(client, title="Second")
    for answer in ("oats", "eggs"):
        client.post("/api/responses", json={"formId": first["id"], "response": {"breakfast": answer}})

    body = client.get("/api/responses").json()
    assert len(body["responses"]) == 2
    assert body["counts"] == {first["id"]: 2, second["id"]: 0}

    filtered = client.get("/api/responses", params={"formId": second["id"]}).json()
    assert filtered == {"responses": [], "counts": {second["id"]: 0}}


# Export

def test_export_without_responses_is_not_found(client):
    form = create_form(client)

    response = client.get(f"/api/forms/{form['id']}/export")

    assert response.status_code == 404
    assert response.json() == {"error": "No responses found for this form"}


def test_export_streams_csv(client):
    form = create_form(client)
    client.post("/api/responses", json={"formId": form["id"], "response": {"breakfast": "oats", "snacks": ["nuts", "fruit"]}})
    client.post("/api/responses", json={"formId": form["id"], "response": {"lunch": "soup"}})

    response = client.get(f"/api/forms/{form['id']}/export")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert 'filename="weekly_nutrition_check_in_responses.csv"' in response.headers["content-disposition"]
    lines = response.text.splitlines()
    assert lines[0] == "Response ID,User ID,Submitted At,breakfast,snacks,lunch"
    assert lines[1].endswith(',oats,"nuts, fruit",')
    assert lines[2].endswith(",,,soup")
    assert len(lines) == 3


def test_form_qr_code(client):
    form = create_form(client)

    response = client.get(f"/api/forms/{form['id']}/qr")

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert response.content.startswith(b"\x89PNG")


# Schema

def test_schema_is_empty_before_first_save(client):
    assert client.get("/api/schema").json() == {"fields": [], "version": None}


def test_save_schema_increments_versions(client, db):
    fields = [{"key": "full_name", "label": "Full Name", "type": "string", "required": True}]

    first = client.post("/api/schema/save", json={"spreadsheetId": SPREADSHEET_ID, "fields": fields}).json()
    second = client.post("/api/schema/save", json={"spreadsheetId": SPREADSHEET_ID, "fields": fields}).json()

    assert (first["version"], second["version"]) == (1, 2)
    assert db["schema_definitions"].count_documents({"connectedSourceId": SPREADSHEET_ID}) == 2
    latest = client.get("/api/schema").json()
    assert latest["version"] == 2
    assert latest["fields"][0]["key"] == "full_name"
    assert latest["fields"][0]["required"] is True


def test_save_schema_rejects_bad_payload(client):
    response = client.post("/api/schema/save", json={"spreadsheetId": SPREADSHEET_ID, "fields": "nope"})

    assert response.status_code == 400


def test_save_schema_rejects_unusable_rules(client, db):
    fields = [{"key": "code", "label": "Code", "validationRules": {"pattern": "("}}]

    response = client.post("/api/schema/save", json={"spreadsheetId": SPREADSHEET_ID, "fields": fields})

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid payload"}
    assert db["schema_definitions"].count_documents({}) == 0


def test_submit_against_corrupt_stored_schema_is_a_server_error(client, db, sheets_service):
    db["schema_definitions"].insert_one({
        "connectedSourceId": SPREADSHEET_ID,
        "version": 1,
        "fields": [{"key": "code", "label": "Code", "validationRules": {"pattern": "("}}],
        "createdBy": "admin-1",
        "createdAt": "2024-05-01T00:00:00+00:00",
    })

    response = client.post("/api/forms/submit", json={"code": "ABC"})

    assert response.status_code == 500
    assert response.json() == {"error": f"Stored schema for {SPREADSHEET_ID} is invalid"}
    sheet_values(sheets_service).append.assert_not_called()


def test_save_schema_has_no_sheet_name():
    assert "sheet_name" not in SaveSchemaRequest.model_fields


def test_schema_requires_configured_spreadsheet(client):
    main.app.dependency_overrides[get_settings] = lambda: Settings()

    response = client.get("/api/schema")

    assert response.status_code == 500
    assert response.json() == {"error": "DEFAULT_SPREADSHEET_ID not set"}


def test_import_schema_reads_header_without_persisting(client, sheets_service, db):
    values = sheet_values(sheets_service)
    values.get.return_value.execute.return_value = {"values": [["Full Name", "Age (yrs)", ""]]}

    response = client.post("/api/schema/import", json={"spreadsheetId": "other-sheet", "sheetName": "Intake"})

    assert response.status_code == 200
    fields = response.json()["fields"]
    assert [f["key"] for f in fields] == ["full_name", "age_yrs", "column_3"]
    assert fields[1]["columnRef"] == "Age (yrs)"
    values.get.assert_called_with(spreadsheetId="other-sheet", range="'Intake'!1:1")
    assert db["schema_definitions"].count_documents({}) == 0


def test_import_schema_connector_failure_is_generic(client, sheets_service):
    sheet_values(sheets_service).get.return_value.execute.side_effect = OSError("connection reset by peer")

    response = client.post("/api/schema/import", json={"spreadsheetId": "other-sheet"})

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to read schema from Google Sheets"}


# Spreadsheet submissions

def save_schema(client, fields):
    client.post("/api/schema/save", json={"spreadsheetId": SPREADSHEET_ID, "fields": fields})


def test_submit_appends_validated_row(client, as_user, sheets_service):
    save_schema(client, [
        {"key": "full_name", "label": "Full Name", "required": True},
        {"key": "age", "label": "Age", "type": "number"},
    ])
    values = sheet_values(sheets_service)
    values.get.return_value.execute.return_value = {"values": [["Full Name", "Age"]]}
    values.append.return_value.execute.return_value = {"updates": {"updatedRange": "'Sheet1'!A7:C7"}}
    as_user(END_USER)

    with patch("connectors.uuid4") as uuid4:
        uuid4.return_value.hex = "row-7"
        response = client.post("/api/forms/submit", json={"full_name": "Ada", "age": "42"})

    assert response.status_code == 200
    assert response.json() == {"externalRowId": "row-7"}
    assert values.append.call_args.kwargs["body"] == {"values": [["Ada", 42, "row-7"]]}
    assert values.append.call_args.kwargs["spreadsheetId"] == SPREADSHEET_ID


def test_submit_rejects_invalid_row(client, sheets_service):
    save_schema(client, [{"key": "full_name", "label": "Full Name", "required": True}])

    response = client.post("/api/forms/submit", json={"age": "42"})

    assert response.status_code == 400
    assert response.json() == {"error": "Missing required field: Full Name"}
    sheet_values(sheets_service).append.assert_not_called()


def test_submit_without_saved_schema_forwards_payload(client, sheets_service):
    values = sheet_values(sheets_service)
    values.get.return_value.execute.return_value = {"values": [["Notes", "_row_id"]]}
    values.append.return_value.execute.return_value = {"updates": {"updatedRange": "Sheet1!A2:B2"}}

    response = client.post("/api/forms/submit", json={"notes": "more water"})

    row_id = response.json()["externalRowId"]
    assert row_id
    assert values.append.call_args.kwargs["body"] == {"values": [["more water", row_id]]}


# Spreadsheet discovery

def test_list_sheet_tabs_route(client, sheets_service):
    sheets_service.spreadsheets.return_value.get.return_value.execute.return_value = {
        "sheets": [{"properties": {"title": "Intake", "sheetId": 3, "index": 0}}]
    }

    response = client.get(f"/api/sheets/{SPREADSHEET_ID}/sheets")

    assert response.json() == {"sheets": [{"name": "Intake", "sheetId": 3, "index": 0}]}


def test_sheets_routes_require_admin(client, as_user):
    as_user(END_USER)

    assert client.get("/api/sheets/list").status_code == 403
