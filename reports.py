"""Accomplishment reports filed against approved proposals."""
import logging
from io import BytesIO
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from reportlab.lib.pagesizes import LETTER
from reportlab.pdfgen import canvas

from database import get_documents, insert_unique, parse_object_id, to_str_id, utcnow
from errors import NotFound, PreconditionFailed, StoreUnavailable, ValidationFailed, validate_model
from schemas import AccomplishmentReport, ReportData

logger = logging.getLogger(__name__)

COLLECTION = "accomplishment_reports"
REVIEW_DECISIONS = ("approved", "denied")
MAX_CAS_ATTEMPTS = 5


def missing_for_submission(report_data: Dict[str, Any]) -> List[str]:
    missing = []
    if not (report_data.get("eventSummary") or "").strip():
        missing.append("eventSummary")
    if report_data.get("actualAttendance") is None:
        missing.append("actualAttendance")
    if not [o for o in report_data.get("objectives") or [] if str(o).strip()]:
        missing.append("objectives")
    return missing


class ReportService:
    def __init__(self, db: Database):
        self.db = db
        self.collection = db[COLLECTION]

    def _report_data(self, report_data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        # variance is stored exactly as given
        return validate_model(ReportData, report_data or {}, "report data").model_dump(
            by_alias=True, exclude_none=True)

    def _missing_or_wrong_state(self, proposal_id: str, action: str) -> None:
        report = self.get_report(proposal_id)
        raise PreconditionFailed(
            f"Cannot {action} report for proposal {proposal_id} in status '{report['status']}'")

    def create_report(self, proposal_id: str, report_data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        proposal = self.db["proposals"].find_one(
            {"_id": parse_object_id(proposal_id, "Proposal")}, {"status": 1})
        if proposal is None:
            raise NotFound(f"Proposal {proposal_id} not found")
        if proposal.get("status") != "approved":
            raise PreconditionFailed(
                f"Reports can only be filed for approved proposals (status '{proposal.get('status')}')")
        report = validate_model(AccomplishmentReport, {
            "proposalId": proposal_id,
            "status": "draft",
            "reportData": self._report_data(report_data),
        }, "report")
        insert_unique(self.db, COLLECTION, report, f"Accomplishment report for proposal {proposal_id}")
        logger.info("Accomplishment report created for proposal %s", proposal_id)
        return self.get_report(proposal_id)

    def get_report(self, proposal_id: str) -> Dict[str, Any]:
        report = self.collection.find_one({"proposalId": proposal_id})
        if report is None:
            raise NotFound(f"No accomplishment report for proposal {proposal_id}")
        return to_str_id(report)

    def list_reports(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        q: Dict[str, Any] = {}
        if status:
            q["status"] = status
        return [to_str_id(r) for r in get_documents(self.db, COLLECTION, q, sort=[("updatedAt", -1)])]

    def update_report(self, proposal_id: str, report_data: Dict[str, Any]) -> Dict[str, Any]:
        """Replace the report contents. A denied report goes back to draft."""
        data = self._report_data(report_data)
        report = self.collection.find_one_and_update(
            {"proposalId": proposal_id, "status": {"$in": ["draft", "denied"]}},
            {"$set": {"reportData": data, "status": "draft", "updatedAt": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if report is None:
            self._missing_or_wrong_state(proposal_id, "edit")
        return to_str_id(report)

    def submit_report(self, proposal_id: str) -> Dict[str, Any]:
        for _ in range(MAX_CAS_ATTEMPTS):
            report = self.get_report(proposal_id)
            if report["status"] != "draft":
                raise PreconditionFailed(
                    f"Cannot submit report for proposal {proposal_id} in status '{report['status']}'")
            report_data = report.get("reportData") or {}
            missing = missing_for_submission(report_data)
            if missing:
                raise ValidationFailed(
                    f"Report is incomplete: {', '.join(missing)}",
                    errors=[{"loc": ["reportData", f], "msg": "required for submission"} for f in missing],
                )
            now = utcnow()
            # the contents checked above must be the contents submitted
            submitted = self.collection.find_one_and_update(
                {"proposalId": proposal_id, "status": "draft", "reportData": report_data},
                {"$set": {"status": "pending", "submittedAt": now, "updatedAt": now}},
                return_document=ReturnDocument.AFTER,
            )
            if submitted is not None:
                logger.info("Accomplishment report submitted for proposal %s", proposal_id)
                return to_str_id(submitted)
        raise StoreUnavailable(f"Report for proposal {proposal_id} kept changing, retry later")

    def review_report(self, proposal_id: str, decision: str,
                      admin_comments: Optional[str] = None) -> Dict[str, Any]:
        if decision not in REVIEW_DECISIONS:
            raise ValidationFailed(f"Decision must be one of {', '.join(REVIEW_DECISIONS)}")
        if admin_comments and len(admin_comments) > 1000:
            raise ValidationFailed("Admin comments must be at most 1000 characters")
        now = utcnow()
        updates: Dict[str, Any] = {"status": decision, "reviewedAt": now, "updatedAt": now}
        if admin_comments is not None:
            updates["adminComments"] = admin_comments
        report = self.collection.find_one_and_update(
            {"proposalId": proposal_id, "status": "pending"},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if report is None:
            self._missing_or_wrong_state(proposal_id, "review")
        logger.info("Accomplishment report for proposal %s %s", proposal_id, decision)
        return to_str_id(report)


# ---------- PDF ----------

def render_report_pdf(report: Dict[str, Any], proposal: Dict[str, Any]) -> bytes:
    data = report.get("reportData") or {}
    buffer = BytesIO()
    c = canvas.Canvas(buffer, pagesize=LETTER)
    title = f"Accomplishment Report: {proposal.get('title', '')}"
    c.setTitle(title)
    width, height = LETTER
    y = height - 72

    def line(text: str, indent: int = 72, step: int = 14) -> None:
        nonlocal y
        c.drawString(indent, y, text[:110])
        y -= step
        if y < 72:
            c.showPage()
            c.setFont("Helvetica", 10)
            y = height - 72

    c.setFont("Helvetica-Bold", 16)
    line(title[:70], step=24)
    c.setFont("Helvetica", 10)
    line(f"Proposal ID: {report.get('proposalId')}")
    line(f"Location: {proposal.get('location', '')}")
    line(f"Submitter: {proposal.get('submitter', '')}")
    line(f"Report status: {report.get('status', 'unknown')}", step=24)

    c.setFont("Helvetica-Bold", 12)
    line("Summary", step=18)
    c.setFont("Helvetica", 10)
    summary = data.get("eventSummary") or "-"
    for start in range(0, len(summary), 100):
        line(summary[start:start + 100], indent=80)
    line(f"Actual attendance: {data.get('actualAttendance', '-')}", step=24)

    for heading, key in (("Objectives", "objectives"), ("Outcomes", "outcomes")):
        c.setFont("Helvetica-Bold", 12)
        line(f"{heading}:", step=18)
        c.setFont("Helvetica", 10)
        for item in data.get(key) or []:
            line(f"- {item}", indent=80)
        y -= 10

    financial = data.get("financialSummary") or {}
    if financial:
        c.setFont("Helvetica-Bold", 12)
        line("Financial summary:", step=18)
        c.setFont("Helvetica", 10)
        for label, key in (("Budget allocated", "budgetAllocated"),
                           ("Actual expenses", "actualExpenses"),
                           ("Variance", "variance")):
            if key in financial:
                line(f"- {label}: {financial[key]:,.2f}", indent=80)

    if report.get("adminComments"):
        y -= 10
        c.setFont("Helvetica-Bold", 12)
        line("Admin comments:", step=18)
        c.setFont("Helvetica", 10)
        line(report["adminComments"], indent=80)

    c.showPage()
    c.save()
    pdf_bytes = buffer.getvalue()
    buffer.close()
    return pdf_bytes
