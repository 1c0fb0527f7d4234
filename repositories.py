"""MongoDB repositories for schema versions, forms and responses."""

import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import create_document, get_documents, serialize_document, to_object_id, utc_now
from errors import ConfigurationError, ConflictError, NotFoundError, PersistenceError
from schemas import CreateFormRequest, Form, Response, SchemaDefinitionDoc, SchemaField, UpdateFormRequest

logger = logging.getLogger(__name__)


class SchemaRepository:
    """Append-only log of schema versions per connected source."""

    collection_name = "schema_definitions"
    counter_collection_name = "schema_version_counters"

    def __init__(self, db: Database):
        self.db = db
        self.collection = db[self.collection_name]
        self.counters = db[self.counter_collection_name]
        try:
            self.collection.create_index(
                [("connectedSourceId", ASCENDING), ("version", ASCENDING)],
                unique=True,
                name="source_version_unique",
            )
        except PyMongoError as e:
            logger.error("Could not ensure schema version index: %s", e)
            raise PersistenceError() from e

    def get_latest_by_source(self, connected_source_id: str) -> Optional[SchemaDefinitionDoc]:
        try:
            docs = list(
                self.collection.find({"connectedSourceId": connected_source_id})
                .sort("version", DESCENDING)
                .limit(1)
            )
        except PyMongoError as e:
            logger.error("Failed to load latest schema for %s: %s", connected_source_id, e)
            raise PersistenceError() from e
        if not docs:
            return None
        try:
            return SchemaDefinitionDoc.model_validate(serialize_document(docs[0]))
        except ValidationError as e:
            logger.error("Stored schema for %s is unusable: %s", connected_source_id, e)
            raise ConfigurationError(f"Stored schema for {connected_source_id} is invalid") from e

    def create(self, definition: SchemaDefinitionDoc) -> SchemaDefinitionDoc:
        """Insert a version as given; the caller picks the version number."""
        try:
            inserted_id = create_document(self.db, self.collection_name, definition)
        except PersistenceError as e:
            if isinstance(e.__cause__, DuplicateKeyError):
                raise ConflictError(
                    f"Schema version {definition.version} already exists for this source"
                ) from e.__cause__
            raise
        return definition.model_copy(update={"id": inserted_id})

    def next_version(self, connected_source_id: str) -> int:
        """Atomically allocate the next version number for a source."""
        latest = self.get_latest_by_source(connected_source_id)
        try:
            # seed from stored versions so counters created late never reuse a number
            self.counters.update_one(
                {"_id": connected_source_id},
                {"$max": {"seq": latest.version if latest else 0}},
                upsert=True,
            )
            counter = self.counters.find_one_and_update(
                {"_id": connected_source_id},
                {"$inc": {"seq": 1}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            logger.error("Failed to allocate schema version for %s: %s", connected_source_id, e)
            raise PersistenceError() from e
        return int(counter["seq"])

    def create_next_version(self, connected_source_id: str, fields: List[SchemaField], created_by: str) -> SchemaDefinitionDoc:
        version = self.next_version(connected_source_id)
        created = self.create(
            SchemaDefinitionDoc(
                connected_source_id=connected_source_id,
                version=version,
                fields=fields,
                created_by=created_by,
                created_at=utc_now(),
            )
        )
        logger.info("Saved schema version %s for source %s", version, connected_source_id)
        return created


class FormRepository:
    collection_name = "forms"

    def __init__(self, db: Database):
        self.db = db
        self.collection = db[self.collection_name]

    def list(self, active_only: bool = False) -> List[Form]:
        filter_dict = {"isActive": True} if active_only else {}
        docs = get_documents(self.db, self.collection_name, filter_dict)
        return [Form.model_validate(doc) for doc in docs]

    def get(self, form_id: str, active_only: bool = False) -> Form:
        oid = to_object_id(form_id)
        if oid is None:
            raise NotFoundError("Form not found")
        query: Dict[str, Any] = {"_id": oid}
        if active_only:
            query["isActive"] = True
        try:
            doc = self.collection.find_one(query)
        except PyMongoError as e:
            logger.error("Failed to load form %s: %s", form_id, e)
            raise PersistenceError() from e
        if not doc:
            raise NotFoundError("Form not found or inactive" if active_only else "Form not found")
        return Form.model_validate(serialize_document(doc))

    def create(self, payload: CreateFormRequest, created_by: str) -> Form:
        now = utc_now()
        form = Form(
            title=payload.title,
            description=payload.description,
            schema=payload.schema_,
            created_by=created_by,
            created_at=now,
            updated_at=now,
            is_active=True,
        )
        form_id = create_document(self.db, self.collection_name, form)
        logger.info("Created form %s", form_id)
        return form.model_copy(update={"id": form_id})

    def update(self, form_id: str, payload: UpdateFormRequest) -> None:
        oid = to_object_id(form_id)
        if oid is None:
            raise NotFoundError("Form not found")
        changes: Dict[str, Any] = {
            "title": payload.title,
            "description": payload.description,
            "schema": payload.schema_,
            "updatedAt": utc_now(),
        }
        if payload.is_active is not None:
            changes["isActive"] = payload.is_active
        try:
            result = self.collection.update_one({"_id": oid}, {"$set": changes})
        except PyMongoError as e:
            logger.error("Failed to update form %s: %s", form_id, e)
            raise PersistenceError() from e
        if result.matched_count == 0:
            raise NotFoundError("Form not found")

    def delete(self, form_id: str) -> None:
        oid = to_object_id(form_id)
        if oid is None:
            raise NotFoundError("Form not found")
        try:
            result = self.collection.delete_one({"_id": oid})
        except PyMongoError as e:
            logger.error("Failed to delete form %s: %s", form_id, e)
            raise PersistenceError() from e
        if result.deleted_count == 0:
            raise NotFoundError("Form not found")
        logger.info("Deleted form %s", form_id)


class ResponseRepository:
    collection_name = "responses"

    def __init__(self, db: Database):
        self.db = db
        self.collection = db[self.collection_name]
        self.forms = FormRepository(db)

    def create(self, form_id: str, user_id: str, response: Dict[str, Any]) -> Response:
        # raises NotFoundError for missing or inactive forms before anything is written
        self.forms.get(form_id, active_only=True)
        item = Response(
            form_id=form_id,
            user_id=user_id,
            response=response,
            submitted_at=utc_now(),
        )
        response_id = create_document(self.db, self.collection_name, item)
        return item.model_copy(update={"id": response_id})

    def list(self, form_id: Optional[str] = None) -> List[Response]:
        filter_dict = {"formId": form_id} if form_id else {}
        docs = get_documents(self.db, self.collection_name, filter_dict, sort=[("submittedAt", ASCENDING)])
        return [Response.model_validate(doc) for doc in docs]

    def count_by_form(self, form_id: str) -> int:
        try:
            return self.collection.count_documents({"formId": form_id})
        except PyMongoError as e:
            logger.error("Failed to count responses for form %s: %s", form_id, e)
            raise PersistenceError() from e
