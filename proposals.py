"""
Proposal state machine.

    draft -> pending -> approved | rejected
                     -> draft  (revise)

Only pending proposals accept a reviewer decision. Every decision appends
one entry to ``reviewComments`` in the same atomic update that changes the
status, so the review trail is never rewritten.
"""
import logging
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from compliance import initial_compliance
from database import create_document, get_documents, parse_object_id, to_str_id, utcnow
from drafts import DraftRepository
from errors import Conflict, NotFound, PreconditionFailed, ValidationFailed, validate_model
from files import FileAuditLog, FileRegistry
from schemas import ProposalCreate, ProposalDocument, ReviewComment

logger = logging.getLogger(__name__)

COLLECTION = "proposals"

DECISION_STATUS = {
    "approve": "approved",
    "reject": "rejected",
    "revise": "draft",
}

# fields a resubmitted draft may not overwrite
_KEEP_ON_REAPPLY = {"createdAt", "reviewComments", "documents", "priority", "assignedTo",
                    "complianceStatus", "complianceDueDate", "complianceDocuments"}

# sections kept whole because they fill a nested proposal field
NESTED_SECTIONS = {"eventDetails"}


def fields_from_form_data(form_data: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten draft sections into proposal fields.

    A section holding an object contributes its keys; any other section value
    is taken as the field of the same name. Sections named after a nested
    field (``eventDetails``) are taken whole.
    """
    fields: Dict[str, Any] = {}
    origin: Dict[str, str] = {}
    for section, payload in form_data.items():
        if isinstance(payload, dict) and section not in NESTED_SECTIONS:
            items = payload.items()
        else:
            items = [(section, payload)]
        for key, value in items:
            if key in fields and fields[key] != value:
                raise ValidationFailed(
                    f"Field '{key}' has different values in sections '{origin[key]}' and '{section}'")
            fields[key] = value
            origin[key] = section
    return fields


class ProposalService:
    def __init__(self, db: Database):
        self.db = db
        self.collection = db[COLLECTION]
        self.drafts = DraftRepository(db)
        self.files = FileRegistry(db)
        self.audit = FileAuditLog(db)

    # ---------- Lookup ----------

    def _get(self, proposal_id: str, projection: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
        proposal = self.collection.find_one({"_id": parse_object_id(proposal_id, "Proposal")}, projection)
        if proposal is None:
            raise NotFound(f"Proposal {proposal_id} not found")
        return proposal

    def _missing_or_wrong_state(self, proposal_id: str, action: str) -> None:
        proposal = self._get(proposal_id, {"status": 1})
        raise PreconditionFailed(
            f"Cannot {action} proposal {proposal_id} in status '{proposal.get('status')}'")

    def get_proposal(self, proposal_id: str) -> Dict[str, Any]:
        return to_str_id(self._get(proposal_id))

    def list_proposals(
        self,
        status: Optional[str] = None,
        compliance_status: Optional[str] = None,
        submitter: Optional[str] = None,
        organization_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        q: Dict[str, Any] = {}
        if status:
            q["status"] = status
        if compliance_status:
            q["complianceStatus"] = compliance_status
        if submitter:
            q["submitter"] = submitter
        if organization_type:
            q["organizationType"] = organization_type
        return [to_str_id(p) for p in get_documents(
            self.db, COLLECTION, q, limit=limit, sort=[("createdAt", -1)])]

    # ---------- Creation ----------

    def create_proposal(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        proposal = validate_model(ProposalCreate, payload, "proposal")
        data = proposal.model_dump(by_alias=True, exclude_none=True)
        now = utcnow()
        if data["status"] == "pending":
            data["submittedAt"] = now
        data.update(initial_compliance(data, now))
        data.update(reviewComments=[], documents=[])
        proposal_id = create_document(self.db, COLLECTION, data)
        logger.info("Proposal created: %s (%s)", proposal_id, data["status"])
        return self.get_proposal(proposal_id)

    def create_from_draft(self, draft_id: str) -> Dict[str, Any]:
        """Materialise the proposal for a submitted draft.

        Safe to retry: the unique ``draftId`` index keeps one proposal per
        draft, and a proposal sent back for revision picks up the edited
        sections when its draft is submitted again.
        """
        draft = self.drafts.get_draft(draft_id)
        if draft["status"] != "submitted":
            raise PreconditionFailed(f"Draft {draft_id} must be submitted before review")
        fields = fields_from_form_data(draft.get("form_data") or {})
        data = validate_model(ProposalCreate, fields, "proposal").model_dump(by_alias=True, exclude_none=True)
        now = utcnow()
        data.update(status="pending", draftId=draft_id, submittedAt=now, updatedAt=now)

        reapplied = self.collection.find_one_and_update(
            {"draftId": draft_id, "status": "draft"},
            {"$set": {k: v for k, v in data.items() if k not in _KEEP_ON_REAPPLY}},
            return_document=ReturnDocument.AFTER,
        )
        if reapplied is not None:
            logger.info("Proposal %s resubmitted from draft %s", reapplied["_id"], draft_id)
            return to_str_id(reapplied)

        data.update(initial_compliance(data, now))
        data.update(reviewComments=[], documents=[])
        try:
            proposal_id = create_document(self.db, COLLECTION, data)
        except DuplicateKeyError:
            existing = self.collection.find_one({"draftId": draft_id})
            logger.info("Proposal for draft %s already exists: %s", draft_id, existing["_id"])
            return to_str_id(existing)
        logger.info("Proposal %s created from draft %s", proposal_id, draft_id)
        return self.get_proposal(proposal_id)

    # ---------- Transitions ----------

    def submit_proposal(self, proposal_id: str) -> Dict[str, Any]:
        now = utcnow()
        proposal = self.collection.find_one_and_update(
            {"_id": parse_object_id(proposal_id, "Proposal"), "status": "draft"},
            {"$set": {"status": "pending", "submittedAt": now, "updatedAt": now}},
            return_document=ReturnDocument.AFTER,
        )
        if proposal is None:
            self._missing_or_wrong_state(proposal_id, "submit")
        logger.info("Proposal submitted: %s", proposal_id)
        return to_str_id(proposal)

    def review(self, proposal_id: str, reviewer: str, decision: str, comment: str = "") -> Dict[str, Any]:
        if decision not in DECISION_STATUS:
            raise ValidationFailed(f"Unknown decision '{decision}'")
        now = utcnow()
        entry = validate_model(ReviewComment, {
            "reviewer": reviewer, "comment": comment or "", "decision": decision, "createdAt": now,
        }, "review comment").model_dump(by_alias=True)
        updates: Dict[str, Any] = {
            "status": DECISION_STATUS[decision],
            "reviewedAt": now,
            "updatedAt": now,
        }
        if comment:
            updates["adminComments"] = comment
        proposal = self.collection.find_one_and_update(
            {"_id": parse_object_id(proposal_id, "Proposal"), "status": "pending"},
            {"$set": updates, "$push": {"reviewComments": entry}},
            return_document=ReturnDocument.AFTER,
        )
        if proposal is None:
            self._missing_or_wrong_state(proposal_id, "review")
        logger.info("Proposal %s reviewed by %s: %s -> %s",
                    proposal_id, reviewer, decision, updates["status"])
        if decision == "revise" and proposal.get("draftId"):
            self.drafts.reopen_draft(proposal["draftId"])
        return to_str_id(proposal)

    def assign(self, proposal_id: str, assigned_to: Optional[str] = None,
               priority: Optional[str] = None) -> Dict[str, Any]:
        updates: Dict[str, Any] = {"updatedAt": utcnow()}
        if assigned_to is not None:
            updates["assignedTo"] = assigned_to
        if priority is not None:
            if priority not in ("low", "medium", "high"):
                raise ValidationFailed(f"Unknown priority '{priority}'")
            updates["priority"] = priority
        proposal = self.collection.find_one_and_update(
            {"_id": parse_object_id(proposal_id, "Proposal")},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if proposal is None:
            raise NotFound(f"Proposal {proposal_id} not found")
        return to_str_id(proposal)

    # ---------- Documents ----------

    def attach_document(
        self,
        proposal_id: str,
        metadata: Dict[str, Any],
        uploaded_by: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Record an uploaded file against a proposal. The bytes are already in the blob store."""
        oid = parse_object_id(proposal_id, "Proposal")
        now = utcnow()
        document = validate_model(ProposalDocument, dict(metadata, uploadedAt=now), "document")
        entry = document.model_dump(by_alias=True, exclude_none=True)
        result = self.collection.update_one(
            {"_id": oid, "documents.name": {"$ne": document.name}},
            {"$push": {"documents": entry}, "$set": {"updatedAt": now}},
        )
        if result.matched_count == 0:
            self._get(proposal_id, {"_id": 1})
            raise Conflict(f"Document '{document.name}' is already attached")
        self.files.register({
            "proposalId": proposal_id,
            "uploadedBy": uploaded_by,
            "fileType": document.type,
            "originalName": document.name,
            "path": document.path,
            "mimetype": document.mimetype,
            "size": document.size,
            "blobId": metadata.get("blobId"),
        })
        self.audit.record(proposal_id, uploaded_by, "upload", {
            "fileName": document.name,
            "fileType": document.type,
            "fileSize": document.size,
            "blobId": metadata.get("blobId"),
        }, ip_address, user_agent)
        return entry

    def list_documents(self, proposal_id: str) -> List[Dict[str, Any]]:
        return self._get(proposal_id, {"documents": 1}).get("documents", [])

    def list_files(self, proposal_id: str) -> List[Dict[str, Any]]:
        """File records still active for the proposal, newest first."""
        self._get(proposal_id, {"_id": 1})
        return self.files.list_active(proposal_id)

    def view_document(
        self,
        proposal_id: str,
        name: str,
        viewed_by: str,
        download: bool = False,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        documents = self.list_documents(proposal_id)
        document = next((d for d in documents if d.get("name") == name), None)
        if document is None:
            raise NotFound(f"Document '{name}' not found on proposal {proposal_id}")
        self.audit.record(proposal_id, viewed_by, "download" if download else "view",
                          {"fileName": name, "fileType": document.get("type")},
                          ip_address, user_agent)
        return document

    def remove_document(
        self,
        proposal_id: str,
        name: str,
        removed_by: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        result = self.collection.update_one(
            {"_id": parse_object_id(proposal_id, "Proposal"), "documents.name": name},
            {"$pull": {"documents": {"name": name}}, "$set": {"updatedAt": utcnow()}},
        )
        if result.matched_count == 0:
            self._get(proposal_id, {"_id": 1})
            raise NotFound(f"Document '{name}' not found on proposal {proposal_id}")
        self.files.soft_delete(proposal_id, name)
        self.audit.record(proposal_id, removed_by, "delete", {"fileName": name},
                          ip_address, user_agent)
        logger.info("Document '%s' removed from proposal %s", name, proposal_id)

    def list_audit(self, proposal_id: str, action: Optional[str] = None) -> List[Dict[str, Any]]:
        self._get(proposal_id, {"_id": 1})
        return self.audit.list_for_proposal(proposal_id, action)

    # ---------- Stats ----------

    def stats(self) -> Dict[str, Any]:
        counts = {row["_id"]: row["count"] for row in self.collection.aggregate([
            {"$group": {"_id": "$status", "count": {"$sum": 1}}}
        ])}
        total = sum(counts.values())
        approved = counts.get("approved", 0)
        decided = approved + counts.get("rejected", 0)
        return {
            "total": total,
            "draft": counts.get("draft", 0),
            "pending": counts.get("pending", 0),
            "approved": approved,
            "rejected": counts.get("rejected", 0),
            "approvalRate": round(approved / decided * 100, 2) if decided else 0,
        }
