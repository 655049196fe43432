"""
Shared fixtures: an in-memory MongoDB (mongomock) laid out by the real
initializer, and a FastAPI TestClient wired to it through ``get_db``.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import get_db
from init_db import initialize_database


# ============================================================================
# TEST DATA FACTORIES
# ============================================================================

def make_proposal_payload(**overrides: Any) -> Dict[str, Any]:
    """Factory for a valid proposal request body."""
    start = datetime(2030, 3, 1, 9, 0, tzinfo=timezone.utc)
    payload = {
        "title": "Coastal Cleanup Drive",
        "description": "Half-day cleanup along the river mouth with local volunteers.",
        "category": "environment",
        "startDate": start.isoformat(),
        "endDate": (start + timedelta(hours=6)).isoformat(),
        "location": "Macabalan Shoreline",
        "budget": 15000,
        "volunteersNeeded": 40,
        "submitter": "organizer@example.org",
        "organizationType": "school-based",
        "contactPerson": "Ana Reyes",
        "contactEmail": "ana.reyes@example.org",
    }
    payload.update(overrides)
    return payload


def make_report_data(**overrides: Any) -> Dict[str, Any]:
    """Factory for a report body complete enough to submit."""
    data = {
        "eventSummary": "Collected 120 kg of plastic waste.",
        "actualAttendance": 52,
        "objectives": ["Clean 2 km of shoreline"],
        "outcomes": ["Shoreline cleared", "Waste sorted for recycling"],
        "financialSummary": {"budgetAllocated": 15000, "actualExpenses": 12000, "variance": 3000},
    }
    data.update(overrides)
    return data


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def db():
    client = mongomock.MongoClient()
    database = client["proposal_intake_test"]
    # mongomock cannot attach $jsonSchema validators
    initialize_database(database, schema_validation=False, seed=False)
    yield database
    client.close()


@pytest.fixture
def client(db):
    from main import app

    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()
