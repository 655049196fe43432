"""
Tests for collection, index and seed initialization.

Usage:
    pytest tests/test_init_db.py -v
"""
from unittest.mock import MagicMock

import mongomock
import pytest
from pymongo.errors import CollectionInvalid, DuplicateKeyError, OperationFailure

from init_db import (
    COLLECTIONS,
    DEFAULT_ORGANIZATIONS,
    ensure_collection,
    ensure_index,
    initialize_database,
    seed_organizations,
)


@pytest.fixture
def empty_db():
    client = mongomock.MongoClient()
    yield client["init_test"]
    client.close()


def index_names(db):
    return {name: set(db[name].index_information()) for name in COLLECTIONS}


class TestInitializeDatabase:
    def test_first_run_creates_everything(self, empty_db):
        summary = initialize_database(empty_db, schema_validation=False)
        assert set(summary["collections"].values()) == {"created"}
        for name, spec in COLLECTIONS.items():
            assert summary["indexes"][name] == sorted(i[0] for i in spec["indexes"])
        assert len(summary["seeded"]) == len(DEFAULT_ORGANIZATIONS)

    def test_second_run_is_a_no_op(self, empty_db):
        initialize_database(empty_db, schema_validation=False)
        before = index_names(empty_db)
        summary = initialize_database(empty_db, schema_validation=False)
        assert set(summary["collections"].values()) == {"existing"}
        assert all(created == [] for created in summary["indexes"].values())
        assert summary["seeded"] == []
        assert index_names(empty_db) == before
        assert empty_db["organizations"].count_documents({}) == len(DEFAULT_ORGANIZATIONS)

    def test_unique_indexes(self, empty_db):
        initialize_database(empty_db, schema_validation=False, seed=False)
        assert empty_db["drafts"].index_information()["idx_draft_id"]["unique"] is True
        assert empty_db["organizations"].index_information()["idx_name"]["unique"] is True
        assert empty_db["accomplishment_reports"].index_information()["idx_proposal_id"]["unique"] is True
        proposals_index = empty_db["proposals"].index_information()["idx_draft_id"]
        assert proposals_index["unique"] is True
        assert proposals_index["sparse"] is True

    def test_validators_are_attached_when_enabled(self):
        db = MagicMock()
        db.list_collection_names.return_value = []
        db.__getitem__.return_value.index_information.return_value = {}
        initialize_database(db, schema_validation=True, seed=False)
        _, kwargs = db.create_collection.call_args_list[0]
        assert kwargs["validationLevel"] == "strict"
        assert kwargs["validationAction"] == "error"
        assert "$jsonSchema" in kwargs["validator"]


class TestIdempotentPrimitives:
    def test_existing_collection_is_skipped(self, empty_db):
        assert ensure_collection(empty_db, "drafts") is True
        assert ensure_collection(empty_db, "drafts") is False

    def test_concurrent_collection_creation_is_tolerated(self):
        db = MagicMock()
        db.list_collection_names.return_value = []
        db.create_collection.side_effect = CollectionInvalid("collection drafts already exists")
        assert ensure_collection(db, "drafts") is False

    def test_namespace_exists_with_validator_is_tolerated(self):
        db = MagicMock()
        db.list_collection_names.return_value = []
        db.create_collection.side_effect = OperationFailure("Collection already exists", code=48)
        assert ensure_collection(db, "proposals", validator={"$jsonSchema": {}}) is False

    def test_other_collection_failures_propagate(self):
        db = MagicMock()
        db.list_collection_names.return_value = []
        db.create_collection.side_effect = OperationFailure("not authorized", code=13)
        with pytest.raises(OperationFailure):
            ensure_collection(db, "proposals", validator={"$jsonSchema": {}})

    def test_existing_index_name_is_skipped(self, empty_db):
        collection = empty_db["drafts"]
        assert ensure_index(collection, "idx_status", [("status", 1)]) is True
        assert ensure_index(collection, "idx_status", [("status", 1)]) is False

    def test_index_race_is_logged_not_raised(self):
        collection = MagicMock()
        collection.index_information.return_value = {}
        collection.create_index.side_effect = OperationFailure("Index already exists", code=85)
        assert ensure_index(collection, "idx_status", [("status", 1)]) is False

    def test_other_index_failures_propagate(self):
        collection = MagicMock()
        collection.index_information.return_value = {}
        collection.create_index.side_effect = OperationFailure("bad key", code=67)
        with pytest.raises(OperationFailure):
            ensure_index(collection, "idx_bad", [("status", 1)])

    def test_unique_index_over_duplicates_raises(self, empty_db):
        empty_db["organizations"].insert_many([{"name": "Same"}, {"name": "Same"}])
        with pytest.raises(DuplicateKeyError):
            ensure_index(empty_db["organizations"], "idx_name", [("name", 1)], unique=True)


class TestSeedOrganizations:
    def test_seeding_twice_keeps_one_document(self, db):
        org = dict(DEFAULT_ORGANIZATIONS[0])
        assert seed_organizations(db, [org]) == [org["name"]]
        assert seed_organizations(db, [org]) == []
        assert db["organizations"].count_documents({"name": org["name"]}) == 1

    def test_duplicate_key_counts_as_existing(self):
        db = MagicMock()
        organizations = db.__getitem__.return_value
        organizations.find_one.return_value = None
        organizations.insert_one.side_effect = DuplicateKeyError("E11000 duplicate key")
        assert seed_organizations(db, [dict(DEFAULT_ORGANIZATIONS[1])]) == []
