import pytest

from catalog_import.domain.error_codes import ErrorType, FailureSeverity, RecoveryStrategy
from catalog_import.domain.models import ValidatedRow
from catalog_import.domain.recovery.models import AttemptRecord, FailedRow, RecoveryCheckpoint
from catalog_import.infra.checkpoints.memory_store import InMemoryCheckpointStore
from catalog_import.infra.checkpoints.sqlite_store import SqliteCheckpointStore
from catalog_import.infra.db.sqlite_engine import SqliteEngine, getCheckpointDbPath, openDb


def checkpoint(checkpoint_id, job_id="job-1", batch_index=0, failed=()):
    return RecoveryCheckpoint(
        id=checkpoint_id,
        job_id=job_id,
        timestamp_ms=1000 + batch_index,
        batch_index=batch_index,
        processed_rows=10 * (batch_index + 1),
        successful_rows=9 * (batch_index + 1),
        invalid_rows=1,
        last_row_index=10 * (batch_index + 1),
        failed_rows=tuple(failed),
        dependencies={7: ["product:shirt"]},
        satisfied_keys=("product:shirt",),
        settled_row_indices=(1, 2, 3),
        status_counts={"created": 9},
        error_distribution={"network": 1},
    )


def failed_row(row_index):
    return FailedRow(
        row_index=row_index,
        row=ValidatedRow(row_index, {"title": "Shirt", "handle": "shirt"}),
        dependencies=frozenset({"collection:summer"}),
        attempts=[AttemptRecord(1, 5, "network down", ErrorType.NETWORK, RecoveryStrategy.IMMEDIATE_RETRY, 12)],
        last_error="network down",
        error_type=ErrorType.NETWORK,
        severity=FailureSeverity.RECOVERABLE,
    )


@pytest.fixture
def sqlite_store():
    engine = SqliteEngine(openDb(":memory:"))
    yield SqliteCheckpointStore(engine)
    engine.close()


@pytest.fixture(params=["memory", "sqlite"])
def store(request, sqlite_store):
    if request.param == "memory":
        return InMemoryCheckpointStore()
    return sqlite_store


def test_save_get_latest_list(store):
    store.save(checkpoint("cp-1", batch_index=0))
    store.save(checkpoint("cp-2", batch_index=1))
    store.save(checkpoint("other", job_id="job-2"))

    assert store.get("cp-1").batch_index == 0
    assert store.get("missing") is None
    assert store.latest("job-1").id == "cp-2"
    assert store.latest("job-9") is None
    assert [c.id for c in store.list("job-1")] == ["cp-1", "cp-2"]
    assert len(store.list()) == 3


def test_failed_rows_survive_persistence(sqlite_store):
    sqlite_store.save(checkpoint("cp-1", failed=[failed_row(7)]))

    loaded = sqlite_store.get("cp-1")

    (row,) = loaded.failed_rows
    assert row.row_index == 7
    assert row.row.get("handle") == "shirt"
    assert row.error_type == ErrorType.NETWORK
    assert row.attempts[0].strategy == RecoveryStrategy.IMMEDIATE_RETRY
    assert loaded.dependencies == {7: ["product:shirt"]}
    assert loaded.error_distribution == {"network": 1}
    assert loaded.settled_row_indices == (1, 2, 3)


def test_resave_same_id_replaces(sqlite_store):
    sqlite_store.save(checkpoint("cp-1", batch_index=0))
    sqlite_store.save(checkpoint("cp-1", batch_index=3))

    assert [c.batch_index for c in sqlite_store.list("job-1")] == [3]


def test_file_database_is_created(tmp_path):
    path = getCheckpointDbPath(str(tmp_path / "checkpoints"))
    engine = SqliteEngine(openDb(path))
    try:
        SqliteCheckpointStore(engine).save(checkpoint("cp-1"))
    finally:
        engine.close()

    engine = SqliteEngine(openDb(path))
    try:
        assert SqliteCheckpointStore(engine).latest("job-1").id == "cp-1"
    finally:
        engine.close()
