"""
Tests for the proposal state machine, draft materialisation and documents.

Usage:
    pytest tests/test_proposals.py -v
"""
import pytest

from conftest import make_proposal_payload
from drafts import DraftRepository
from errors import Conflict, NotFound, PreconditionFailed, ValidationFailed
from files import FileRegistry
from proposals import ProposalService, fields_from_form_data


@pytest.fixture
def service(db):
    return ProposalService(db)


@pytest.fixture
def pending(service):
    return service.create_proposal(make_proposal_payload())


def submitted_draft(db, **sections):
    repo = DraftRepository(db)
    draft_id = repo.create_draft()["draftId"]
    for name, payload in sections.items():
        repo.patch_section(draft_id, name, payload)
    repo.submit_draft(draft_id)
    return draft_id


def draft_sections():
    payload = make_proposal_payload()
    return {
        "basics": {k: payload[k] for k in ("title", "description", "category", "location")},
        "schedule": {k: payload[k] for k in ("startDate", "endDate")},
        "submitter": payload["submitter"],
    }


# ============================================================================
# CREATION
# ============================================================================

class TestCreateProposal:
    def test_pending_by_default(self, pending):
        assert pending["status"] == "pending"
        assert pending["submittedAt"] is not None
        assert pending["reviewComments"] == []
        assert pending["priority"] == "medium"

    def test_can_start_as_draft(self, service):
        proposal = service.create_proposal(make_proposal_payload(status="draft"))
        assert proposal["status"] == "draft"
        assert "submittedAt" not in proposal

    def test_cannot_start_approved(self, service):
        with pytest.raises(ValidationFailed):
            service.create_proposal(make_proposal_payload(status="approved"))

    def test_end_before_start_is_rejected(self, service, db):
        payload = make_proposal_payload(endDate="2030-02-01T00:00:00+00:00")
        with pytest.raises(ValidationFailed):
            service.create_proposal(payload)
        assert db["proposals"].count_documents({}) == 0

    def test_title_length_is_enforced(self, service):
        with pytest.raises(ValidationFailed) as exc:
            service.create_proposal(make_proposal_payload(title="x" * 101))
        assert exc.value.errors[0]["loc"] == ("title",)

    def test_mixed_offset_and_naive_dates(self, service):
        proposal = service.create_proposal(make_proposal_payload(
            startDate="2030-03-01T09:00:00Z", endDate="2030-03-01T15:00:00"))
        assert proposal["status"] == "pending"

    def test_naive_end_before_aware_start_is_rejected(self, service):
        with pytest.raises(ValidationFailed):
            service.create_proposal(make_proposal_payload(
                startDate="2030-03-01T09:00:00+00:00", endDate="2030-03-01T08:00:00"))

    def test_negative_budget_is_rejected(self, service):
        with pytest.raises(ValidationFailed):
            service.create_proposal(make_proposal_payload(budget=-1))

    def test_community_proposal_gets_compliance(self, service):
        proposal = service.create_proposal(make_proposal_payload(category="community"))
        assert proposal["complianceStatus"] == "pending"
        assert len(proposal["complianceDocuments"]) == 3

    def test_other_proposal_is_not_applicable(self, pending):
        assert pending["complianceStatus"] == "not_applicable"
        assert pending["complianceDocuments"] == []


class TestFieldsFromFormData:
    def test_object_sections_contribute_their_keys(self):
        fields = fields_from_form_data({"a": {"title": "T"}, "b": {"location": "L"}, "budget": 10})
        assert fields == {"title": "T", "location": "L", "budget": 10}

    def test_identical_values_in_two_sections_are_fine(self):
        assert fields_from_form_data({"a": {"title": "T"}, "b": {"title": "T"}}) == {"title": "T"}

    def test_conflicting_values_fail(self):
        with pytest.raises(ValidationFailed):
            fields_from_form_data({"a": {"title": "T"}, "b": {"title": "U"}})

    def test_event_details_section_is_kept_whole(self):
        details = {"eventType": "seminar", "targetAudience": ["students"]}
        fields = fields_from_form_data({"basics": {"title": "T"}, "eventDetails": details})
        assert fields == {"title": "T", "eventDetails": details}


class TestCreateFromDraft:
    def test_creates_pending_proposal(self, service, db):
        draft_id = submitted_draft(db, **draft_sections())
        proposal = service.create_from_draft(draft_id)
        assert proposal["status"] == "pending"
        assert proposal["draftId"] == draft_id
        assert proposal["title"] == "Coastal Cleanup Drive"

    def test_is_idempotent(self, service, db):
        draft_id = submitted_draft(db, **draft_sections())
        first = service.create_from_draft(draft_id)
        second = service.create_from_draft(draft_id)
        assert first["id"] == second["id"]
        assert db["proposals"].count_documents({"draftId": draft_id}) == 1

    def test_requires_submitted_draft(self, service, db):
        draft_id = DraftRepository(db).create_draft()["draftId"]
        with pytest.raises(PreconditionFailed):
            service.create_from_draft(draft_id)

    def test_unknown_draft(self, service):
        with pytest.raises(NotFound):
            service.create_from_draft("missing")

    def test_incomplete_draft_fails_validation(self, service, db):
        draft_id = submitted_draft(db, basics={"title": "Only a title"})
        with pytest.raises(ValidationFailed):
            service.create_from_draft(draft_id)
        assert db["proposals"].count_documents({}) == 0

    def test_revised_proposal_picks_up_edits(self, service, db):
        sections = draft_sections()
        draft_id = submitted_draft(db, **sections)
        proposal = service.create_from_draft(draft_id)
        service.review(proposal["id"], "admin", "revise", "Please rename")

        repo = DraftRepository(db)
        assert repo.get_draft(draft_id)["status"] == "draft"
        repo.patch_section(draft_id, "basics", dict(sections["basics"], title="Renamed Cleanup"))
        repo.submit_draft(draft_id)

        resubmitted = service.create_from_draft(draft_id)
        assert resubmitted["id"] == proposal["id"]
        assert resubmitted["status"] == "pending"
        assert resubmitted["title"] == "Renamed Cleanup"
        assert len(resubmitted["reviewComments"]) == 1

    def test_resubmission_keeps_reviewer_assignment(self, service, db):
        draft_id = submitted_draft(db, **draft_sections())
        proposal = service.create_from_draft(draft_id)
        service.assign(proposal["id"], "reviewer-1", "high")
        service.review(proposal["id"], "admin", "revise", "Add a schedule")
        DraftRepository(db).submit_draft(draft_id)

        resubmitted = service.create_from_draft(draft_id)
        assert resubmitted["status"] == "pending"
        assert resubmitted["priority"] == "high"
        assert resubmitted["assignedTo"] == "reviewer-1"

    def test_event_details_section_fills_nested_field(self, service, db):
        sections = draft_sections()
        sections["eventDetails"] = {"eventType": "workshop", "eventMode": "hybrid", "timeStart": "09:00"}
        proposal = service.create_from_draft(submitted_draft(db, **sections))
        assert proposal["eventDetails"]["eventType"] == "workshop"
        assert proposal["eventDetails"]["timeStart"] == "09:00"
        assert "eventType" not in proposal


# ============================================================================
# REVIEW
# ============================================================================

class TestReview:
    @pytest.mark.parametrize("decision,status", [
        ("approve", "approved"), ("reject", "rejected"), ("revise", "draft"),
    ])
    def test_decision_sets_status(self, service, pending, decision, status):
        reviewed = service.review(pending["id"], "admin", decision, "noted")
        assert reviewed["status"] == status
        assert reviewed["reviewedAt"] is not None
        assert reviewed["adminComments"] == "noted"

    def test_revise_appends_exactly_one_comment(self, service, pending):
        service.review(pending["id"], "alice", "revise", "first pass")
        service.submit_proposal(pending["id"])
        revised = service.review(pending["id"], "bob", "revise", "second pass")
        comments = revised["reviewComments"]
        assert [c["comment"] for c in comments] == ["first pass", "second pass"]
        assert [c["reviewer"] for c in comments] == ["alice", "bob"]
        assert all(c["decision"] == "revise" for c in comments)

    def test_only_pending_accepts_decisions(self, service, pending):
        service.review(pending["id"], "admin", "approve")
        with pytest.raises(PreconditionFailed):
            service.review(pending["id"], "admin", "reject")
        assert len(service.get_proposal(pending["id"])["reviewComments"]) == 1

    def test_draft_cannot_be_reviewed(self, service):
        proposal = service.create_proposal(make_proposal_payload(status="draft"))
        with pytest.raises(PreconditionFailed):
            service.review(proposal["id"], "admin", "approve")

    def test_unknown_proposal(self, service):
        with pytest.raises(NotFound):
            service.review("64b7f0c2a1b2c3d4e5f60718", "admin", "approve")

    def test_malformed_id_is_not_found(self, service):
        with pytest.raises(NotFound):
            service.get_proposal("not-an-object-id")

    def test_unknown_decision(self, service, pending):
        with pytest.raises(ValidationFailed):
            service.review(pending["id"], "admin", "escalate")

    def test_submit_requires_draft(self, service, pending):
        with pytest.raises(PreconditionFailed):
            service.submit_proposal(pending["id"])


class TestAssignAndList:
    def test_assign(self, service, pending):
        updated = service.assign(pending["id"], "reviewer@example.org", "high")
        assert updated["assignedTo"] == "reviewer@example.org"
        assert updated["priority"] == "high"

    def test_assign_rejects_unknown_priority(self, service, pending):
        with pytest.raises(ValidationFailed):
            service.assign(pending["id"], priority="urgent")

    def test_list_filters(self, service):
        service.create_proposal(make_proposal_payload(submitter="a@example.org"))
        service.create_proposal(make_proposal_payload(submitter="b@example.org", category="community"))
        assert len(service.list_proposals(submitter="a@example.org")) == 1
        assert len(service.list_proposals(compliance_status="pending")) == 1
        assert len(service.list_proposals(status="pending")) == 2

    def test_stats(self, service):
        first = service.create_proposal(make_proposal_payload())
        second = service.create_proposal(make_proposal_payload())
        service.create_proposal(make_proposal_payload())
        service.review(first["id"], "admin", "approve")
        service.review(second["id"], "admin", "reject")
        stats = service.stats()
        assert stats["total"] == 3
        assert stats["pending"] == 1
        assert stats["approvalRate"] == 50.0


# ============================================================================
# DOCUMENTS & AUDIT
# ============================================================================

class TestDocuments:
    def attach(self, service, proposal_id, name="gpoa.pdf"):
        return service.attach_document(
            proposal_id,
            {"name": name, "path": f"proposals/{proposal_id}/{name}", "type": "gpoa",
             "size": 2048, "mimetype": "application/pdf", "blobId": "blob-1"},
            "organizer@example.org",
            ip_address="10.0.0.1",
        )

    def test_attach_records_metadata_and_audit(self, service, pending, db):
        self.attach(service, pending["id"])
        assert [d["name"] for d in service.list_documents(pending["id"])] == ["gpoa.pdf"]
        files = db["proposal_files"].find_one({"proposalId": pending["id"]})
        assert files["blobId"] == "blob-1"
        assert files["isDeleted"] is False
        audit = service.list_audit(pending["id"])
        assert audit[0]["action"] == "upload"
        assert audit[0]["fileInfo"]["fileName"] == "gpoa.pdf"
        assert audit[0]["ipAddress"] == "10.0.0.1"

    def test_same_name_twice_conflicts(self, service, pending):
        self.attach(service, pending["id"])
        with pytest.raises(Conflict):
            self.attach(service, pending["id"])
        assert len(service.list_documents(pending["id"])) == 1

    def test_list_files(self, service, pending):
        self.attach(service, pending["id"])
        files = service.list_files(pending["id"])
        assert [f["originalName"] for f in files] == ["gpoa.pdf"]
        with pytest.raises(NotFound):
            service.list_files("64b7f0c2a1b2c3d4e5f60718")

    def test_attach_to_unknown_proposal(self, service):
        with pytest.raises(NotFound):
            self.attach(service, "64b7f0c2a1b2c3d4e5f60718")

    def test_remove_soft_deletes(self, service, pending, db):
        self.attach(service, pending["id"])
        assert len(FileRegistry(db).list_active(pending["id"])) == 1
        service.remove_document(pending["id"], "gpoa.pdf", "admin")
        assert service.list_documents(pending["id"]) == []
        assert db["proposal_files"].find_one({"originalName": "gpoa.pdf"})["isDeleted"] is True
        assert FileRegistry(db).list_active(pending["id"]) == []
        assert [a["action"] for a in service.list_audit(pending["id"], "delete")] == ["delete"]

    def test_remove_missing_document(self, service, pending):
        with pytest.raises(NotFound):
            service.remove_document(pending["id"], "nope.pdf", "admin")

    def test_view_is_audited(self, service, pending):
        self.attach(service, pending["id"])
        service.view_document(pending["id"], "gpoa.pdf", "reviewer", download=True)
        actions = {a["action"] for a in service.list_audit(pending["id"])}
        assert actions == {"upload", "download"}
