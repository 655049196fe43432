"""Organizations that proposals are filed on behalf of. ``name`` is the natural key."""
import logging
from typing import Any, Dict, List, Optional

from pymongo.database import Database

from database import get_documents, insert_unique, to_str_id
from errors import NotFound, validate_model
from schemas import Organization

logger = logging.getLogger(__name__)

COLLECTION = "organizations"


class OrganizationService:
    def __init__(self, db: Database):
        self.db = db
        self.collection = db[COLLECTION]

    def create(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        organization = validate_model(Organization, payload, "organization")
        insert_unique(self.db, COLLECTION, organization, f"Organization '{organization.name}'")
        logger.info("Organization created: %s", organization.name)
        return self.get_by_name(organization.name)

    def get_by_name(self, name: str) -> Dict[str, Any]:
        organization = self.collection.find_one({"name": name})
        if organization is None:
            raise NotFound(f"Organization '{name}' not found")
        return to_str_id(organization)

    def list(self, organization_type: Optional[str] = None,
             active: Optional[bool] = None) -> List[Dict[str, Any]]:
        q: Dict[str, Any] = {}
        if organization_type:
            q["organizationType"] = organization_type
        if active is not None:
            q["isActive"] = active
        return [to_str_id(o) for o in get_documents(self.db, COLLECTION, q, sort=[("name", 1)])]
