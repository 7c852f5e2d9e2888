"""
Test suite for storage backends

Tests basic record operations and the versioned compare-and-swap writes on
both the in-memory and SQLite backends.
"""

import pytest

from approval_engine.errors import ConflictError
from approval_engine.storage import InMemoryStorage, SQLiteStorage, create_storage


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    """Each test runs against both backends"""
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(tmp_path / "approvals.db")
    yield backend
    backend.close()


class TestStorageOperations:
    """Test basic record operations"""

    def test_save_load_count(self, storage):
        storage.save("principals", "alice", {"id": "alice", "roles": ["reviewer"]})
        storage.save("principals", "alice", {"id": "alice", "roles": ["reviewer", "admin"]})

        assert storage.load("principals", "alice") == {"id": "alice", "roles": ["reviewer", "admin"]}
        assert storage.load("principals", "bob") is None
        assert storage.count("principals") == 1
        assert storage.count("workflow_templates") == 0

    def test_loaded_records_are_copies(self, storage):
        """Test callers cannot mutate stored state in place"""
        storage.save("principals", "alice", {"id": "alice", "roles": ["reviewer"]})
        record = storage.load("principals", "alice")
        record["roles"].append("admin")

        assert storage.load("principals", "alice")["roles"] == ["reviewer"]

    def test_find(self, storage):
        storage.save("workflow_instances", "a", {"id": "a", "status": "IN_PROGRESS", "entity_type": "REPORT"})
        storage.save("workflow_instances", "b", {"id": "b", "status": "APPROVED", "entity_type": "REPORT"})
        storage.save("workflow_instances", "c", {"id": "c", "status": "IN_PROGRESS", "entity_type": "BUDGET"})

        found = storage.find("workflow_instances", {"status": "IN_PROGRESS", "entity_type": "REPORT"})
        assert [r["id"] for r in found] == ["a"]
        assert len(storage.find("workflow_instances", {})) == 3


class TestVersionedWrites:
    """Test compare-and-swap on the version field"""

    def test_insert_must_not_exist(self, storage):
        storage.save_versioned("workflow_instances", "i-1", {"id": "i-1", "version": 1}, None)

        with pytest.raises(ConflictError) as exc_info:
            storage.save_versioned("workflow_instances", "i-1", {"id": "i-1", "version": 1}, None)
        assert exc_info.value.actual_version == 1

    def test_update_with_expected_version(self, storage):
        storage.save_versioned("workflow_instances", "i-1", {"id": "i-1", "version": 1}, None)
        storage.save_versioned("workflow_instances", "i-1", {"id": "i-1", "version": 2, "step": 1}, 1)

        assert storage.load("workflow_instances", "i-1") == {"id": "i-1", "version": 2, "step": 1}

    def test_stale_version_conflicts(self, storage):
        """Test the second writer from the same version loses"""
        storage.save_versioned("workflow_instances", "i-1", {"id": "i-1", "version": 1}, None)
        storage.save_versioned("workflow_instances", "i-1", {"id": "i-1", "version": 2, "by": "alice"}, 1)

        with pytest.raises(ConflictError) as exc_info:
            storage.save_versioned("workflow_instances", "i-1", {"id": "i-1", "version": 2, "by": "bob"}, 1)

        error = exc_info.value
        assert error.retryable
        assert error.instance_id == "i-1"
        assert error.expected_version == 1
        assert error.actual_version == 2
        assert storage.load("workflow_instances", "i-1")["by"] == "alice"

    def test_update_missing_record_conflicts(self, storage):
        with pytest.raises(ConflictError):
            storage.save_versioned("workflow_instances", "ghost", {"id": "ghost", "version": 4}, 3)
        assert storage.load("workflow_instances", "ghost") is None


class TestCreateStorage:
    """Test building backends from a database URL"""

    def test_memory(self):
        assert isinstance(create_storage("memory"), InMemoryStorage)

    def test_sqlite(self, tmp_path):
        storage = create_storage(f"sqlite:///{tmp_path / 'engine.db'}")
        assert isinstance(storage, SQLiteStorage)
        storage.save("principals", "alice", {"id": "alice"})
        storage.close()

        reopened = SQLiteStorage(tmp_path / "engine.db")
        assert reopened.load("principals", "alice") == {"id": "alice"}
        reopened.close()

    def test_unsupported(self):
        with pytest.raises(ValueError):
            create_storage("postgresql://localhost/approvals")
