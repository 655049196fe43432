"""
Collection, validator and index setup for the proposal intake database.

Everything here is safe to re-run against a live database: collections and
indexes are looked up by name before being created, and seed rows are keyed
by their natural key. Losing a creation race to another process is logged
and treated as success.

Usage:
    python init_db.py [--no-seed] [--no-validation]
"""
import argparse
import logging
import os
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import CollectionInvalid, DuplicateKeyError, OperationFailure

import database
from database import utcnow

logger = logging.getLogger(__name__)

EMAIL_PATTERN = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"

# IndexOptionsConflict / IndexKeySpecsConflict
INDEX_CONFLICT_CODES = {85, 86}
NAMESPACE_EXISTS = 48

SEED_ORGANIZATIONS = os.getenv("SEED_ORGANIZATIONS", "true").lower() == "true"


# ---------- $jsonSchema builders ----------

def _string(max_length: Optional[int] = None, enum: Optional[Sequence[str]] = None,
            pattern: Optional[str] = None) -> Dict[str, Any]:
    spec: Dict[str, Any] = {"bsonType": "string"}
    if max_length is not None:
        spec["maxLength"] = max_length
    if enum is not None:
        spec["enum"] = list(enum)
    if pattern is not None:
        spec["pattern"] = pattern
    return spec


def _number(minimum: Optional[float] = None) -> Dict[str, Any]:
    spec: Dict[str, Any] = {"bsonType": "number"}
    if minimum is not None:
        spec["minimum"] = minimum
    return spec


def _object(properties: Dict[str, Any], required: Sequence[str] = ()) -> Dict[str, Any]:
    spec: Dict[str, Any] = {"bsonType": "object", "properties": properties}
    if required:
        spec["required"] = list(required)
    return spec


def _array(items: Dict[str, Any]) -> Dict[str, Any]:
    return {"bsonType": "array", "items": items}


DATE = {"bsonType": "date"}
BOOL = {"bsonType": "bool"}
ANY_OBJECT = {"bsonType": "object"}


def _validator(properties: Dict[str, Any], required: Sequence[str]) -> Dict[str, Any]:
    return {"$jsonSchema": _object(properties, required)}


# ---------- Collection declarations ----------

DRAFTS_VALIDATOR = _validator({
    "draftId": _string(),
    "status": _string(enum=["draft", "submitted"]),
    "form_data": ANY_OBJECT,
    "createdAt": DATE,
    "updatedAt": DATE,
    "submittedAt": DATE,
}, required=["draftId", "status", "form_data"])

PROPOSALS_VALIDATOR = _validator({
    "title": _string(100),
    "description": _string(2000),
    "category": _string(enum=[
        "education", "health", "environment", "community", "technology", "other",
        "school-event", "community-event",
    ]),
    "startDate": DATE,
    "endDate": DATE,
    "location": _string(255),
    "eventDetails": _object({
        "timeStart": _string(),
        "timeEnd": _string(),
        "eventType": _string(enum=["academic", "workshop", "seminar", "assembly", "leadership", "other"]),
        "eventMode": _string(enum=["offline", "online", "hybrid"]),
        "returnServiceCredit": _number(),
        "targetAudience": _array(_string()),
        "organizationId": _string(),
    }),
    "budget": _number(0),
    "objectives": _string(1000),
    "volunteersNeeded": _number(0),
    "submitter": _string(),
    "organizationType": _string(enum=["internal", "external", "school-based", "community-based"]),
    "contactPerson": _string(255),
    "contactEmail": _string(pattern=EMAIL_PATTERN),
    "contactPhone": _string(20),
    "status": _string(enum=["draft", "pending", "approved", "rejected"]),
    "priority": _string(enum=["low", "medium", "high"]),
    "assignedTo": _string(),
    "draftId": _string(),
    "adminComments": _string(1000),
    "reviewComments": _array(_object({
        "reviewer": _string(),
        "comment": _string(500),
        "decision": _string(enum=["approve", "reject", "revise"]),
        "createdAt": DATE,
    }, required=["reviewer", "comment", "decision", "createdAt"])),
    "documents": _array(_object({
        "name": _string(255),
        "path": _string(500),
        "mimetype": _string(),
        "size": _number(0),
        "type": _string(enum=["gpoa", "proposal", "accomplishment", "other"]),
        "uploadedAt": DATE,
    }, required=["name", "path", "type", "uploadedAt"])),
    "complianceStatus": _string(enum=["not_applicable", "pending", "compliant", "overdue"]),
    "complianceDueDate": DATE,
    "complianceDocuments": _array(_object({
        "name": _string(255),
        "path": _string(500),
        "required": BOOL,
        "submitted": BOOL,
        "submittedAt": DATE,
    })),
    "createdAt": DATE,
    "updatedAt": DATE,
}, required=["title", "description", "category", "startDate", "endDate", "location", "submitter"])

ORGANIZATIONS_VALIDATOR = _validator({
    "name": _string(255),
    "description": _string(1000),
    "organizationType": _string(enum=["school-based", "community-based"]),
    "contactPerson": _string(255),
    "contactEmail": _string(pattern=EMAIL_PATTERN),
    "contactPhone": _string(20),
    "isActive": BOOL,
    "createdAt": DATE,
    "updatedAt": DATE,
}, required=["name", "contactPerson", "contactEmail", "organizationType"])

PROPOSAL_FILES_VALIDATOR = _validator({
    "proposalId": _string(),
    "uploadedBy": _string(),
    "fileType": _string(enum=["gpoa", "proposal", "accomplishment", "attendance", "other"]),
    "originalName": _string(255),
    "path": _string(500),
    "mimetype": _string(),
    "size": _number(0),
    "blobId": _string(),
    "organizationId": _string(),
    "section": _string(),
    "purpose": _string(255),
    "isDeleted": BOOL,
    "uploadedAt": DATE,
}, required=["proposalId", "uploadedBy", "fileType", "originalName"])

ACCOMPLISHMENT_REPORTS_VALIDATOR = _validator({
    "proposalId": _string(),
    "status": _string(enum=["draft", "pending", "approved", "denied"]),
    "reportData": _object({
        "eventSummary": _string(2000),
        "actualAttendance": _number(0),
        "objectives": _array(_string()),
        "outcomes": _array(_string()),
        "challenges": _string(1000),
        "recommendations": _string(1000),
        "financialSummary": _object({
            "budgetAllocated": _number(0),
            "actualExpenses": _number(0),
            "variance": _number(),
        }),
    }),
    "submittedAt": DATE,
    "reviewedAt": DATE,
    "adminComments": _string(1000),
    "createdAt": DATE,
    "updatedAt": DATE,
}, required=["proposalId", "status"])

FILE_UPLOADS_VALIDATOR = _validator({
    "proposalId": _string(),
    "uploadedBy": _string(),
    "action": _string(enum=["upload", "delete", "replace", "view", "download"]),
    "fileInfo": _object({
        "fileName": _string(),
        "fileType": _string(),
        "fileSize": _number(),
        "blobId": _string(),
    }),
    "ipAddress": _string(),
    "userAgent": _string(),
    "timestamp": DATE,
}, required=["proposalId", "uploadedBy", "action", "timestamp"])

COLLECTIONS: Dict[str, Dict[str, Any]] = {
    "drafts": {
        "validator": DRAFTS_VALIDATOR,
        "indexes": [
            ("idx_draft_id", [("draftId", 1)], {"unique": True}),
            ("idx_status", [("status", 1)], {}),
            ("idx_updated_at_desc", [("updatedAt", -1)], {}),
        ],
    },
    "proposals": {
        "validator": PROPOSALS_VALIDATOR,
        "indexes": [
            ("idx_submitter", [("submitter", 1)], {}),
            ("idx_status", [("status", 1)], {}),
            ("idx_category", [("category", 1)], {}),
            ("idx_organization_type", [("organizationType", 1)], {}),
            ("idx_assigned_to", [("assignedTo", 1)], {}),
            ("idx_priority", [("priority", 1)], {}),
            ("idx_event_dates", [("startDate", 1), ("endDate", 1)], {}),
            ("idx_created_at_desc", [("createdAt", -1)], {}),
            ("idx_updated_at_desc", [("updatedAt", -1)], {}),
            ("idx_event_org_id", [("eventDetails.organizationId", 1)], {}),
            ("idx_compliance", [("complianceStatus", 1), ("complianceDueDate", 1)], {}),
            ("idx_status_priority_date", [("status", 1), ("priority", 1), ("createdAt", -1)], {}),
            ("idx_draft_id", [("draftId", 1)], {"unique": True, "sparse": True}),
        ],
    },
    "organizations": {
        "validator": ORGANIZATIONS_VALIDATOR,
        "indexes": [
            ("idx_name", [("name", 1)], {"unique": True}),
            ("idx_type", [("organizationType", 1)], {}),
            ("idx_is_active", [("isActive", 1)], {}),
            ("idx_contact_email", [("contactEmail", 1)], {}),
        ],
    },
    "proposal_files": {
        "validator": PROPOSAL_FILES_VALIDATOR,
        "indexes": [
            ("idx_proposal_id", [("proposalId", 1)], {}),
            ("idx_uploaded_by", [("uploadedBy", 1)], {}),
            ("idx_file_type", [("fileType", 1)], {}),
            ("idx_blob_id", [("blobId", 1)], {}),
            ("idx_organization_id", [("organizationId", 1)], {}),
            ("idx_active_files", [("isDeleted", 1), ("uploadedAt", -1)], {}),
        ],
    },
    "accomplishment_reports": {
        "validator": ACCOMPLISHMENT_REPORTS_VALIDATOR,
        "indexes": [
            ("idx_proposal_id", [("proposalId", 1)], {"unique": True}),
            ("idx_status", [("status", 1)], {}),
            ("idx_submitted_at_desc", [("submittedAt", -1)], {}),
        ],
    },
    "file_uploads": {
        "validator": FILE_UPLOADS_VALIDATOR,
        "indexes": [
            ("idx_proposal_id", [("proposalId", 1)], {}),
            ("idx_uploaded_by", [("uploadedBy", 1)], {}),
            ("idx_action", [("action", 1)], {}),
            ("idx_timestamp_desc", [("timestamp", -1)], {}),
            ("idx_proposal_action_time", [("proposalId", 1), ("action", 1), ("timestamp", -1)], {}),
        ],
    },
}

DEFAULT_ORGANIZATIONS: List[Dict[str, Any]] = [
    {
        "name": "City Economic Development Office",
        "description": "Main government office for economic development initiatives",
        "organizationType": "school-based",
        "contactPerson": "CEDO Administrator",
        "contactEmail": "admin@cedo.gov.ph",
        "contactPhone": "+63-88-123-4567",
        "isActive": True,
    },
    {
        "name": "Xavier University",
        "description": "Educational institution offering undergraduate and graduate programs",
        "organizationType": "school-based",
        "contactPerson": "University Coordinator",
        "contactEmail": "coordinator@xu.edu.ph",
        "contactPhone": "+63-88-999-8888",
        "isActive": True,
    },
    {
        "name": "Cagayan de Oro Community Foundation",
        "description": "Non-profit organization supporting community development and social programs",
        "organizationType": "community-based",
        "contactPerson": "Foundation Director",
        "contactEmail": "director@cdocf.org",
        "contactPhone": "+63-88-777-6666",
        "isActive": True,
    },
]


# ---------- Idempotent primitives ----------

def ensure_collection(db: Database, name: str, validator: Optional[Dict[str, Any]] = None) -> bool:
    """Create ``name`` unless it exists. Returns True when this call created it."""
    if name in db.list_collection_names():
        logger.info("Collection '%s' already exists", name)
        return False
    try:
        if validator is not None:
            db.create_collection(name, validator=validator,
                                 validationLevel="strict", validationAction="error")
        else:
            db.create_collection(name)
    except CollectionInvalid:
        logger.info("Collection '%s' was created concurrently", name)
        return False
    except OperationFailure as exc:
        if exc.code != NAMESPACE_EXISTS:
            raise
        logger.warning("Collection '%s' was created concurrently: %s", name, exc)
        return False
    logger.info("Collection '%s' created%s", name, " with validation" if validator else "")
    return True


def ensure_index(collection: Collection, name: str, keys: List[Tuple[str, int]], **options: Any) -> bool:
    """Create a named index unless one with that name exists. Returns True when created."""
    if name in collection.index_information():
        logger.info("Index '%s' already exists on '%s'", name, collection.name)
        return False
    try:
        collection.create_index(keys, name=name, **options)
    except DuplicateKeyError as exc:
        # unique index over data that already violates it
        logger.error("Index '%s' on '%s' not created, duplicate data: %s", name, collection.name, exc)
        raise
    except OperationFailure as exc:
        if exc.code in INDEX_CONFLICT_CODES:
            logger.warning("Index '%s' on '%s' already created elsewhere: %s", name, collection.name, exc)
            return False
        raise
    logger.info("Index '%s' created on '%s'", name, collection.name)
    return True


def seed_organizations(db: Database, organizations: Optional[List[Dict[str, Any]]] = None) -> List[str]:
    """Insert reference organizations that are not present yet; returns the names inserted."""
    inserted: List[str] = []
    collection = db["organizations"]
    for org in organizations if organizations is not None else DEFAULT_ORGANIZATIONS:
        if collection.find_one({"name": org["name"]}) is not None:
            logger.info("Organization '%s' already exists", org["name"])
            continue
        doc = dict(org)
        now = utcnow()
        doc.setdefault("createdAt", now)
        doc["updatedAt"] = now
        try:
            collection.insert_one(doc)
        except DuplicateKeyError:
            logger.info("Organization '%s' already exists (duplicate key)", org["name"])
            continue
        logger.info("Organization '%s' created", org["name"])
        inserted.append(org["name"])
    return inserted


def initialize_database(db: Database, schema_validation: bool = True, seed: bool = True) -> Dict[str, Any]:
    summary: Dict[str, Any] = {"collections": {}, "indexes": {}, "seeded": []}
    for name, spec in COLLECTIONS.items():
        created = ensure_collection(db, name, spec["validator"] if schema_validation else None)
        summary["collections"][name] = "created" if created else "existing"
        collection = db[name]
        summary["indexes"][name] = sorted(
            index_name for index_name, keys, options in spec["indexes"]
            if ensure_index(collection, index_name, keys, **options)
        )
    if seed:
        summary["seeded"] = seed_organizations(db)
    logger.info("Database initialization complete: %s", summary["collections"])
    return summary


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Create collections, validators and indexes")
    parser.add_argument("--no-seed", action="store_true", help="skip reference organizations")
    parser.add_argument("--no-validation", action="store_true", help="create collections without $jsonSchema")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    db = database.connect()
    try:
        initialize_database(
            db,
            schema_validation=database.SCHEMA_VALIDATION and not args.no_validation,
            seed=SEED_ORGANIZATIONS and not args.no_seed,
        )
    finally:
        database.close()


if __name__ == "__main__":
    main()
