import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import Body, Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from pymongo.database import Database
from pymongo.errors import ConnectionFailure

import database
from compliance import ComplianceService
from database import get_db
from drafts import DraftRepository
from errors import IntakeError, StoreUnavailable
from init_db import SEED_ORGANIZATIONS, initialize_database
from organizations import OrganizationService
from proposals import ProposalService
from reports import ReportService, render_report_pdf
from schemas import CamelModel, Decision, DocumentType, Priority

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

INIT_DB_ON_STARTUP = os.getenv("INIT_DB_ON_STARTUP", "true").lower() == "true"
ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",") if o.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect to MongoDB and make sure collections and indexes exist."""
    if database.DATABASE_URL:
        try:
            db = database.connect()
        except StoreUnavailable as exc:
            logger.error("Starting without a database: %s", exc)
        else:
            if INIT_DB_ON_STARTUP:
                initialize_database(db, schema_validation=database.SCHEMA_VALIDATION,
                                    seed=SEED_ORGANIZATIONS)
    else:
        logger.warning("DATABASE_URL not set, store endpoints will return 503")
    logger.info("Proposal intake API started")
    yield
    database.close()
    logger.info("Proposal intake API shutdown complete")


app = FastAPI(title="Event Proposal Intake API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------- Errors ----------

@app.exception_handler(IntakeError)
async def intake_error_handler(request: Request, exc: IntakeError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(ConnectionFailure)
async def connection_failure_handler(request: Request, exc: ConnectionFailure):
    logger.error("Store unavailable during %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content=StoreUnavailable("Database temporarily unavailable").to_dict())


def _client_info(request: Request) -> Dict[str, Optional[str]]:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


# ---------- Health & Schema ----------

@app.get("/")
def read_root():
    return {"message": "Event Proposal Intake Backend"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if database.DATABASE_URL else "❌ Not Set",
        "database_name": "❌ Not Set",
        "collections": [],
    }
    if database.db is not None:
        try:
            response["collections"] = database.db.list_collection_names()
            response["database"] = "✅ Connected"
            response["database_name"] = database.db.name
        except ConnectionFailure as e:
            response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


@app.get("/schema")
def get_schema():
    # Expose schemas for database viewer
    import schemas as app_schemas
    out = {}
    for name in dir(app_schemas):
        model = getattr(app_schemas, name)
        if (not name.startswith("_") and isinstance(model, type)
                and issubclass(model, BaseModel) and model is not CamelModel
                and model.__module__ == app_schemas.__name__):
            out[name] = model.model_json_schema()
    return out


@app.post("/api/admin/init-db")
def init_db(seed: bool = True, db: Database = Depends(get_db)):
    return initialize_database(db, schema_validation=database.SCHEMA_VALIDATION, seed=seed)


# ---------- Drafts ----------

@app.post("/proposals/drafts")
@app.post("/api/proposals/drafts", include_in_schema=False)
def create_draft(db: Database = Depends(get_db)):
    draft = DraftRepository(db).create_draft()
    return {"draftId": draft["draftId"], "status": draft["status"]}


@app.get("/proposals/drafts")
@app.get("/api/proposals/drafts", include_in_schema=False)
def list_drafts(status: Optional[str] = None, db: Database = Depends(get_db)):
    drafts, count = DraftRepository(db).list_drafts(status)
    return {"drafts": drafts, "count": count}


@app.get("/proposals/drafts/{draft_id}")
@app.get("/api/proposals/drafts/{draft_id}", include_in_schema=False)
def get_draft(draft_id: str, db: Database = Depends(get_db)):
    return DraftRepository(db).get_draft(draft_id)


@app.patch("/api/proposals/drafts/{draft_id}/{section}")
@app.patch("/proposals/drafts/{draft_id}/{section}", include_in_schema=False)
def patch_draft_section(draft_id: str, section: str, payload: Any = Body(None),
                        db: Database = Depends(get_db)):
    DraftRepository(db).patch_section(draft_id, section, payload)
    return {"success": True}


@app.post("/proposals/drafts/{draft_id}/submit")
@app.post("/api/proposals/drafts/{draft_id}/submit", include_in_schema=False)
def submit_draft(draft_id: str, db: Database = Depends(get_db)):
    DraftRepository(db).submit_draft(draft_id)
    return {"success": True}


# ---------- Organizations ----------

@app.post("/api/organizations")
def create_organization(payload: Dict[str, Any] = Body(...), db: Database = Depends(get_db)):
    return OrganizationService(db).create(payload)


@app.get("/api/organizations")
def list_organizations(organization_type: Optional[str] = None, active: Optional[bool] = None,
                       db: Database = Depends(get_db)):
    return OrganizationService(db).list(organization_type, active)


@app.get("/api/organizations/{name}")
def get_organization(name: str, db: Database = Depends(get_db)):
    return OrganizationService(db).get_by_name(name)


# ---------- Proposals ----------

class ReviewIn(CamelModel):
    reviewer: str = Field(..., min_length=1)
    decision: Decision
    comment: str = Field("", max_length=500)


class AssignmentIn(CamelModel):
    assigned_to: Optional[str] = None
    priority: Optional[Priority] = None


@app.post("/api/proposals")
def create_proposal(payload: Dict[str, Any] = Body(...), db: Database = Depends(get_db)):
    return ProposalService(db).create_proposal(payload)


@app.get("/api/proposals")
def list_proposals(
    status: Optional[str] = None,
    compliance_status: Optional[str] = None,
    submitter: Optional[str] = None,
    organization_type: Optional[str] = None,
    limit: Optional[int] = None,
    db: Database = Depends(get_db),
):
    return ProposalService(db).list_proposals(status, compliance_status, submitter, organization_type, limit)


@app.get("/api/proposals/stats")
def proposal_stats(db: Database = Depends(get_db)):
    return ProposalService(db).stats()


@app.post("/api/proposals/from-draft/{draft_id}")
def create_proposal_from_draft(draft_id: str, db: Database = Depends(get_db)):
    return ProposalService(db).create_from_draft(draft_id)


@app.get("/api/proposals/{proposal_id}")
def get_proposal(proposal_id: str, db: Database = Depends(get_db)):
    return ProposalService(db).get_proposal(proposal_id)


@app.post("/api/proposals/{proposal_id}/submit")
def submit_proposal(proposal_id: str, db: Database = Depends(get_db)):
    return ProposalService(db).submit_proposal(proposal_id)


@app.post("/api/proposals/{proposal_id}/review")
def review_proposal(proposal_id: str, payload: ReviewIn, db: Database = Depends(get_db)):
    return ProposalService(db).review(proposal_id, payload.reviewer, payload.decision, payload.comment)


@app.patch("/api/proposals/{proposal_id}/assignment")
def assign_proposal(proposal_id: str, payload: AssignmentIn, db: Database = Depends(get_db)):
    return ProposalService(db).assign(proposal_id, payload.assigned_to, payload.priority)


# ---------- Proposal documents ----------

class DocumentIn(CamelModel):
    name: str = Field(..., min_length=1, max_length=255)
    path: str = Field(..., min_length=1, max_length=500)
    mimetype: Optional[str] = None
    size: Optional[int] = Field(None, ge=0)
    type: DocumentType = "other"
    blob_id: Optional[str] = None
    uploaded_by: str = Field(..., min_length=1)


@app.post("/api/proposals/{proposal_id}/documents")
def attach_document(proposal_id: str, payload: DocumentIn, request: Request,
                    db: Database = Depends(get_db)):
    metadata = payload.model_dump(by_alias=True, exclude_none=True, exclude={"uploaded_by"})
    return ProposalService(db).attach_document(
        proposal_id, metadata, payload.uploaded_by, **_client_info(request))


@app.get("/api/proposals/{proposal_id}/documents")
def list_documents(proposal_id: str, db: Database = Depends(get_db)):
    return ProposalService(db).list_documents(proposal_id)


@app.get("/api/proposals/{proposal_id}/files")
def list_files(proposal_id: str, db: Database = Depends(get_db)):
    return ProposalService(db).list_files(proposal_id)


@app.get("/api/proposals/{proposal_id}/documents/{name}")
def view_document(proposal_id: str, name: str, request: Request, user: str = "anonymous",
                  download: bool = False, db: Database = Depends(get_db)):
    return ProposalService(db).view_document(
        proposal_id, name, user, download=download, **_client_info(request))


@app.delete("/api/proposals/{proposal_id}/documents/{name}")
def remove_document(proposal_id: str, name: str, request: Request, user: str = "anonymous",
                    db: Database = Depends(get_db)):
    ProposalService(db).remove_document(proposal_id, name, user, **_client_info(request))
    return {"success": True}


@app.get("/api/proposals/{proposal_id}/audit")
def list_audit(proposal_id: str, action: Optional[str] = None, db: Database = Depends(get_db)):
    return ProposalService(db).list_audit(proposal_id, action)


# ---------- Compliance ----------

class ComplianceDocumentIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    path: Optional[str] = Field(None, max_length=500)


@app.get("/api/compliance")
def list_compliance(status: Optional[str] = None, db: Database = Depends(get_db)):
    return ComplianceService(db).list_compliance(status)


@app.get("/api/compliance/stats")
def compliance_stats(db: Database = Depends(get_db)):
    return ComplianceService(db).stats()


@app.post("/api/compliance/overdue")
def mark_compliance_overdue(db: Database = Depends(get_db)):
    return {"updated": ComplianceService(db).mark_overdue()}


@app.post("/api/compliance/{proposal_id}/documents")
def submit_compliance_document(proposal_id: str, payload: ComplianceDocumentIn,
                               db: Database = Depends(get_db)):
    return ComplianceService(db).submit_document(proposal_id, payload.name, payload.path)


# ---------- Accomplishment reports ----------

class ReportIn(CamelModel):
    report_data: Optional[Dict[str, Any]] = None


class ReportReviewIn(CamelModel):
    decision: str
    admin_comments: Optional[str] = None


@app.post("/api/proposals/{proposal_id}/report")
def create_report(proposal_id: str, payload: Optional[ReportIn] = None, db: Database = Depends(get_db)):
    return ReportService(db).create_report(proposal_id, payload.report_data if payload else None)


@app.get("/api/proposals/{proposal_id}/report")
def get_report(proposal_id: str, db: Database = Depends(get_db)):
    return ReportService(db).get_report(proposal_id)


@app.put("/api/proposals/{proposal_id}/report")
def update_report(proposal_id: str, payload: ReportIn, db: Database = Depends(get_db)):
    return ReportService(db).update_report(proposal_id, payload.report_data or {})


@app.post("/api/proposals/{proposal_id}/report/submit")
def submit_report(proposal_id: str, db: Database = Depends(get_db)):
    return ReportService(db).submit_report(proposal_id)


@app.post("/api/proposals/{proposal_id}/report/review")
def review_report(proposal_id: str, payload: ReportReviewIn, db: Database = Depends(get_db)):
    return ReportService(db).review_report(proposal_id, payload.decision, payload.admin_comments)


@app.get("/api/proposals/{proposal_id}/report/pdf")
def report_pdf(proposal_id: str, db: Database = Depends(get_db)):
    proposal = ProposalService(db).get_proposal(proposal_id)
    report = ReportService(db).get_report(proposal_id)
    pdf_bytes = render_report_pdf(report, proposal)
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="report-{proposal_id}.pdf"'},
    )


@app.get("/api/reports")
def list_reports(status: Optional[str] = None, db: Database = Depends(get_db)) -> List[Dict[str, Any]]:
    return ReportService(db).list_reports(status)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
