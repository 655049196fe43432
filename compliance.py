"""
Compliance tracking for proposals.

Compliance runs alongside the approval lifecycle and never depends on it:
a proposal is given its obligation when it is created, and its status is
re-derived from the compliance documents and the due date whenever one of
the documents changes.
"""
import logging
import os
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pymongo.database import Database

from database import as_utc, get_documents, parse_object_id, to_str_id, utcnow
from errors import NotFound, StoreUnavailable

logger = logging.getLogger(__name__)

COMPLIANCE_DUE_DAYS = int(os.getenv("COMPLIANCE_DUE_DAYS", "30"))
COMPLIANCE_CATEGORIES = {"community", "community-event"}
COMPLIANCE_ORGANIZATION_TYPES = {"community-based"}
DEFAULT_REQUIRED_DOCUMENTS = ("Attendance Sheet", "Liquidation Report", "Photo Documentation")

# compare-and-set attempts before giving up on a contended proposal
MAX_CAS_ATTEMPTS = 5


def requires_compliance(proposal: Dict[str, Any]) -> bool:
    return (
        proposal.get("category") in COMPLIANCE_CATEGORIES
        or proposal.get("organizationType") in COMPLIANCE_ORGANIZATION_TYPES
    )


def initial_compliance(proposal: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Compliance fields for a newly created proposal."""
    if not requires_compliance(proposal):
        return {"complianceStatus": "not_applicable", "complianceDocuments": []}
    now = now or utcnow()
    anchor = as_utc(proposal.get("endDate")) or now
    return {
        "complianceStatus": "pending",
        "complianceDueDate": anchor + timedelta(days=COMPLIANCE_DUE_DAYS),
        "complianceDocuments": [
            {"name": name, "required": True, "submitted": False}
            for name in DEFAULT_REQUIRED_DOCUMENTS
        ],
    }


def evaluate(proposal: Dict[str, Any], now: Optional[datetime] = None) -> str:
    status = proposal.get("complianceStatus", "not_applicable")
    if status == "not_applicable":
        return status
    documents = proposal.get("complianceDocuments") or []
    if all(doc.get("submitted") for doc in documents if doc.get("required")):
        return "compliant"
    due = as_utc(proposal.get("complianceDueDate"))
    if due is not None and due < (now or utcnow()):
        return "overdue"
    return "pending"


class ComplianceService:
    def __init__(self, db: Database):
        self.db = db
        self.collection = db["proposals"]

    def _get(self, proposal_id: str) -> Dict[str, Any]:
        proposal = self.collection.find_one({"_id": parse_object_id(proposal_id, "Proposal")})
        if proposal is None:
            raise NotFound(f"Proposal {proposal_id} not found")
        return proposal

    def submit_document(self, proposal_id: str, name: str, path: Optional[str] = None) -> Dict[str, Any]:
        """Mark a compliance document submitted, adding it if it is not tracked yet."""
        oid = parse_object_id(proposal_id, "Proposal")
        now = utcnow()
        entry: Dict[str, Any] = {"submitted": True, "submittedAt": now}
        if path:
            entry["path"] = path
        updates = {f"complianceDocuments.$.{k}": v for k, v in entry.items()}
        updates["updatedAt"] = now
        result = self.collection.update_one(
            {"_id": oid, "complianceDocuments.name": name},
            {"$set": updates},
        )
        if result.matched_count == 0:
            result = self.collection.update_one(
                {"_id": oid, "complianceDocuments.name": {"$ne": name}},
                {
                    "$push": {"complianceDocuments": dict(entry, name=name, required=False)},
                    "$set": {"updatedAt": now},
                },
            )
            if result.matched_count == 0:
                # either missing, or another request added the same name meanwhile
                self._get(proposal_id)
                return self.submit_document(proposal_id, name, path)
        logger.info("Compliance document '%s' submitted for proposal %s", name, proposal_id)
        return self.reevaluate(proposal_id)

    def reevaluate(self, proposal_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Re-derive complianceStatus, retrying if the documents change underneath."""
        for _ in range(MAX_CAS_ATTEMPTS):
            proposal = self._get(proposal_id)
            status = evaluate(proposal, now)
            if status == proposal.get("complianceStatus"):
                return to_str_id(proposal)
            result = self.collection.update_one(
                {
                    "_id": proposal["_id"],
                    "complianceDocuments": proposal.get("complianceDocuments", []),
                },
                {"$set": {"complianceStatus": status, "updatedAt": utcnow()}},
            )
            if result.matched_count:
                logger.info("Proposal %s compliance %s -> %s",
                            proposal_id, proposal.get("complianceStatus"), status)
                proposal["complianceStatus"] = status
                return to_str_id(proposal)
        raise StoreUnavailable(f"Proposal {proposal_id} compliance kept changing, retry later")

    def mark_overdue(self, now: Optional[datetime] = None) -> int:
        """Flag pending obligations whose due date has passed."""
        now = now or utcnow()
        result = self.collection.update_many(
            {"complianceStatus": "pending", "complianceDueDate": {"$lt": now}},
            {"$set": {"complianceStatus": "overdue", "updatedAt": now}},
        )
        if result.modified_count:
            logger.info("Marked %d proposals compliance overdue", result.modified_count)
        return result.modified_count

    def list_compliance(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        q: Dict[str, Any] = {"complianceStatus": {"$ne": "not_applicable"}}
        if status:
            q["complianceStatus"] = status
        return [to_str_id(p) for p in get_documents(
            self.db, "proposals", q, sort=[("complianceDueDate", 1)])]

    def stats(self) -> Dict[str, Any]:
        counts = {row["_id"]: row["count"] for row in self.collection.aggregate([
            {"$group": {"_id": "$complianceStatus", "count": {"$sum": 1}}}
        ])}
        tracked = sum(n for status, n in counts.items() if status not in (None, "not_applicable"))
        compliant = counts.get("compliant", 0)
        return {
            "compliant": compliant,
            "pending": counts.get("pending", 0),
            "overdue": counts.get("overdue", 0),
            "total": tracked,
            "complianceRate": round(compliant / tracked * 100, 2) if tracked else 0,
        }
