"""File metadata records and the append-only file access audit log.

File bytes live in an external blob store; only metadata and the blob key
pass through this service.
"""
import logging
from typing import Any, Dict, List, Optional

from pymongo.database import Database

from database import create_document, get_documents, to_str_id, utcnow
from errors import validate_model
from schemas import FileMetadata, FileUploadAudit

logger = logging.getLogger(__name__)

FILES = "proposal_files"
AUDIT = "file_uploads"


class FileAuditLog:
    def __init__(self, db: Database):
        self.db = db

    def record(
        self,
        proposal_id: str,
        uploaded_by: str,
        action: str,
        file_info: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        entry = validate_model(FileUploadAudit, {
            "proposalId": proposal_id,
            "uploadedBy": uploaded_by,
            "action": action,
            "fileInfo": {k: v for k, v in (file_info or {}).items() if v is not None},
            "ipAddress": ip_address,
            "userAgent": user_agent,
            "timestamp": utcnow(),
        }, "audit entry")
        audit_id = create_document(self.db, AUDIT, entry)
        logger.info("File %s by %s on proposal %s", action, uploaded_by, proposal_id)
        return audit_id

    def list_for_proposal(self, proposal_id: str, action: Optional[str] = None) -> List[Dict[str, Any]]:
        q: Dict[str, Any] = {"proposalId": proposal_id}
        if action:
            q["action"] = action
        return [to_str_id(e) for e in get_documents(self.db, AUDIT, q, sort=[("timestamp", -1)])]


class FileRegistry:
    def __init__(self, db: Database):
        self.db = db
        self.collection = db[FILES]

    def register(self, metadata: Dict[str, Any]) -> str:
        record = validate_model(FileMetadata, dict(metadata, uploadedAt=utcnow()), "file metadata")
        return create_document(self.db, FILES, record)

    def soft_delete(self, proposal_id: str, original_name: str) -> int:
        result = self.collection.update_many(
            {"proposalId": proposal_id, "originalName": original_name, "isDeleted": False},
            {"$set": {"isDeleted": True, "updatedAt": utcnow()}},
        )
        return result.modified_count

    def list_active(self, proposal_id: str) -> List[Dict[str, Any]]:
        return [to_str_id(f) for f in get_documents(
            self.db, FILES, {"proposalId": proposal_id, "isDeleted": False},
            sort=[("uploadedAt", -1)])]
