"""Draft repository: section-addressable proposal documents prior to submission."""
import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.database import Database

from database import create_document, get_documents, strip_id, utcnow
from errors import NotFound, PreconditionFailed, ValidationFailed

logger = logging.getLogger(__name__)

COLLECTION = "drafts"
MAX_SECTION_NAME = 100


def check_section_name(section: str) -> None:
    # section names become "form_data.<section>" update paths
    if not section or len(section) > MAX_SECTION_NAME:
        raise ValidationFailed(f"Section name must be 1-{MAX_SECTION_NAME} characters")
    if "." in section or section.startswith("$") or "\x00" in section:
        raise ValidationFailed(f"Invalid section name '{section}'")


class DraftRepository:
    """CRUD and per-section patching over the ``drafts`` collection.

    Every mutation is a single conditional update on one document, so
    concurrent patches to different sections never overwrite each other and
    a patch racing a submit lands entirely before or after it.
    """

    def __init__(self, db: Database):
        self.collection = db[COLLECTION]
        self.db = db

    def create_draft(self) -> Dict[str, Any]:
        now = utcnow()
        draft = {
            "draftId": str(uuid.uuid4()),
            "status": "draft",
            "form_data": {},
            "createdAt": now,
            "updatedAt": now,
        }
        create_document(self.db, COLLECTION, draft)
        logger.info("Draft created: %s", draft["draftId"])
        return strip_id(draft)

    def get_draft(self, draft_id: str) -> Dict[str, Any]:
        draft = self.collection.find_one({"draftId": draft_id}, {"_id": 0})
        if draft is None:
            raise NotFound(f"Draft {draft_id} not found")
        return draft

    def _missing_or_wrong_state(self, draft_id: str, action: str) -> None:
        draft = self.collection.find_one({"draftId": draft_id}, {"status": 1})
        if draft is None:
            raise NotFound(f"Draft {draft_id} not found")
        raise PreconditionFailed(f"Cannot {action} draft {draft_id} in status '{draft['status']}'")

    def patch_section(self, draft_id: str, section: str, payload: Any) -> None:
        """Replace ``form_data[section]`` wholesale. Submitted drafts are read-only."""
        check_section_name(section)
        result = self.collection.update_one(
            {"draftId": draft_id, "status": "draft"},
            {"$set": {f"form_data.{section}": payload, "updatedAt": utcnow()}},
        )
        if result.matched_count == 0:
            self._missing_or_wrong_state(draft_id, "edit")
        logger.debug("Draft section updated: %s/%s", draft_id, section)

    def submit_draft(self, draft_id: str) -> Dict[str, Any]:
        now = utcnow()
        draft = self.collection.find_one_and_update(
            {"draftId": draft_id, "status": "draft"},
            {"$set": {"status": "submitted", "submittedAt": now, "updatedAt": now}},
            return_document=ReturnDocument.AFTER,
        )
        if draft is not None:
            logger.info("Draft submitted: %s", draft_id)
            return strip_id(draft)
        # a retried submit finds the draft already submitted
        draft = self.get_draft(draft_id)
        logger.info("Draft %s already submitted", draft_id)
        return draft

    def reopen_draft(self, draft_id: str) -> bool:
        """Move a submitted draft back to editing. Returns False if it was not submitted."""
        result = self.collection.update_one(
            {"draftId": draft_id, "status": "submitted"},
            {"$set": {"status": "draft", "updatedAt": utcnow()}, "$unset": {"submittedAt": ""}},
        )
        if result.modified_count:
            logger.info("Draft reopened for revision: %s", draft_id)
        return bool(result.modified_count)

    def list_drafts(self, status: Optional[str] = None) -> Tuple[List[Dict[str, Any]], int]:
        q: Dict[str, Any] = {}
        if status:
            q["status"] = status
        drafts = [strip_id(d) for d in get_documents(self.db, COLLECTION, q)]
        return drafts, len(drafts)
