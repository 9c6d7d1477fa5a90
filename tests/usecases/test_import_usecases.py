import json
import threading

import pytest

from catalog_import.common.cancellation import CancellationToken
from catalog_import.config.config import ImportConfig, ImportMode
from catalog_import.domain.exceptions import DomainWriteError
from catalog_import.domain.mapping.column_mapper import ColumnMappingResolver
from catalog_import.domain.metrics.observability import ImportObservability
from catalog_import.domain.models import RawRecord, WriteResult
from catalog_import.errors import CheckpointNotFoundError, ConfigError, ImportFatalError
from catalog_import.infra.artifacts.file_sink import FileArtifactSink
from catalog_import.infra.artifacts.report_writer import createEmptyReport
from catalog_import.infra.checkpoints.memory_store import InMemoryCheckpointStore
from catalog_import.infra.sources.csv_reader import CsvRecordSource
from catalog_import.usecases.import_run_usecase import ImportDependencies, ImportRunUseCase, run_import
from catalog_import.usecases.resume_usecase import ResumeImportUseCase, resume_import


def config(**overrides) -> ImportConfig:
    values = dict(
        base_retry_delay_ms=1,
        max_backoff_delay_ms=10,
        dependency_retry_delay_ms=1,
        writer_timeout_ms=2000,
    )
    values.update(overrides)
    return ImportConfig(**values)


def records(*titles):
    return [RawRecord(row_index=i, values={"title": t, "handle": None}) for i, t in enumerate(titles, start=1)]


class RecordingWriter:
    def __init__(self, failures=None):
        self.failures = failures or {}
        self.calls: list[int] = []
        self._lock = threading.Lock()

    def write(self, row):
        with self._lock:
            self.calls.append(row.row_index)
        error = self.failures.get(row.row_index)
        if error is not None:
            raise error
        return WriteResult(entity_id=f"prod_{row.row_index}", handle=row.get("handle"))


def deps(**kwargs) -> ImportDependencies:
    kwargs.setdefault("memory_sampler", lambda: 10.0)
    return ImportDependencies(**kwargs)


def test_dry_run_skips_writes_and_publishes_artifacts(tmp_path):
    sink = FileArtifactSink(str(tmp_path / "artifacts"))

    result = run_import(
        records("Shirt", "", "Hat"),
        config(mode=ImportMode.DRY_RUN),
        deps(artifact_sink=sink),
        job_id="job-dry",
    )

    assert (result.processed_rows, result.valid_rows, result.invalid_rows) == (3, 2, 1)
    assert (result.skipped, result.created, result.failed) == (2, 0, 0)
    assert result.has_row_failures is True
    assert set(result.artifacts) == {
        "validation_report_url",
        "error_rows_url",
        "result_summary_url",
        "dead_letter_url",
    }
    report = json.loads((tmp_path / "artifacts" / "job-dry" / "validation_report.json").read_text(encoding="utf-8"))
    assert report["summary"]["invalid_rows"] == 1
    assert report["summary"]["total_rows"] == 3


def test_execute_counts_created_and_failed_rows():
    writer = RecordingWriter({2: DomainWriteError("price rejected", error_type="validation")})
    report = createEmptyReport(runId="run-1", command="run", configSources=[])

    result = ImportRunUseCase(config(), deps(writer=writer)).run(records("Shirt", "Hat", "Bag"), job_id="job-1", report=report)

    assert (result.created, result.failed, result.dead_lettered) == (2, 1, 0)
    assert sorted(writer.calls) == [1, 2, 3]
    assert result.error_distribution == {"validation": 1}
    assert report.meta.job_id == "job-1"
    assert report.summary.rows_failed == 1
    assert [(item.status, item.row_index) for item in report.items] == [("FAILED", 2)]


def test_writer_required_in_execute_mode():
    with pytest.raises(ImportFatalError) as exc_info:
        run_import(records("Shirt"), config(), deps())

    assert exc_info.value.code == "WRITER_MISSING"


def test_max_rows_is_fatal():
    with pytest.raises(ImportFatalError) as exc_info:
        run_import(records("A", "B", "C"), config(mode=ImportMode.DRY_RUN, max_rows=2), deps())

    assert exc_info.value.code == "MAX_ROWS_EXCEEDED"


def test_unknown_mapping_profile_is_config_error():
    with pytest.raises(ConfigError):
        run_import(records("A"), config(mode=ImportMode.DRY_RUN, mapping_profile_id="missing"), deps())


def test_mapping_profile_renames_columns():
    resolver = ColumnMappingResolver(profiles={"shop": {"Name": "title", "Slug": "handle"}})
    source = [RawRecord(row_index=1, values={"Name": "Linen Shirt", "Slug": "linen-shirt"})]
    writer = RecordingWriter()

    result = run_import(
        source,
        config(mapping_profile_id="shop"),
        deps(writer=writer, mapping_resolver=resolver),
    )

    assert result.created == 1
    assert writer.calls == [1]


def test_csv_format_error_is_fatal(tmp_path):
    path = tmp_path / "broken.csv"
    path.write_text("title,handle\nShirt,shirt,extra\n", encoding="utf-8")

    with pytest.raises(ImportFatalError) as exc_info:
        run_import(CsvRecordSource(str(path)), config(mode=ImportMode.DRY_RUN), deps())

    assert exc_info.value.code == "SOURCE_FORMAT"


def test_validator_crash_is_fatal():
    class Crashing:
        def validate(self, record):
            raise RuntimeError("rules not loaded")

    with pytest.raises(ImportFatalError) as exc_info:
        run_import(records("A"), config(mode=ImportMode.DRY_RUN), deps(validator=Crashing()))

    assert exc_info.value.code == "VALIDATOR_ERROR"


def test_resume_reruns_failed_rows_only():
    store = InMemoryCheckpointStore()
    first_writer = RecordingWriter({2: DomainWriteError("connection reset", error_type="network")})
    cfg = config(max_retries=1)

    first = run_import(records("Shirt", "Hat", "Bag"), cfg, deps(writer=first_writer, checkpoint_store=store), job_id="job-r")

    assert (first.created, first.failed) == (2, 1)
    assert store.latest("job-r").last_row_index == 3

    second_writer = RecordingWriter()
    resumed = ResumeImportUseCase(cfg, deps(writer=second_writer, checkpoint_store=store)).run(
        "job-r", records("Shirt", "Hat", "Bag")
    )

    assert second_writer.calls == [2]
    assert (resumed.processed_rows, resumed.created, resumed.failed) == (3, 3, 0)


def test_resume_requires_store_and_known_checkpoint():
    with pytest.raises(ImportFatalError):
        ResumeImportUseCase(config(), deps(writer=RecordingWriter()))

    use_case = ResumeImportUseCase(config(), deps(writer=RecordingWriter(), checkpoint_store=InMemoryCheckpointStore()))
    with pytest.raises(CheckpointNotFoundError):
        use_case.run("job-x", records("A"))
    with pytest.raises(CheckpointNotFoundError):
        use_case.run("job-x", records("A"), checkpoint_id="checkpoint_0_1_1")


def test_cancelled_job_stops_and_leaves_checkpoint():
    store = InMemoryCheckpointStore()
    token = CancellationToken()
    token.cancel()
    writer = RecordingWriter()

    result = run_import(records("A", "B"), config(), deps(writer=writer, checkpoint_store=store), job_id="job-c", cancel=token)

    assert result.cancelled is True
    assert writer.calls == []
    assert result.last_checkpoint_id is not None
    assert store.latest("job-c").id == result.last_checkpoint_id


def test_resume_import_from_named_checkpoint():
    store = InMemoryCheckpointStore()
    cfg = config(max_retries=1)
    writer = RecordingWriter({1: DomainWriteError("upstream timeout", error_type="timeout")})
    run_import(records("Shirt", "Hat"), cfg, deps(writer=writer, checkpoint_store=store), job_id="job-n")
    (checkpoint,) = [c for c in store.list("job-n") if c.failed_rows]

    result = resume_import(
        "job-n",
        records("Shirt", "Hat"),
        cfg,
        deps(writer=RecordingWriter(), checkpoint_store=store),
        checkpoint_id=checkpoint.id,
    )

    assert (result.created, result.failed) == (2, 0)


def test_resume_from_mid_batch_checkpoint_writes_only_unsettled_rows():
    store = InMemoryCheckpointStore()
    cfg = config(checkpoint_interval_rows=2, max_concurrency=1)
    titles = ("Shirt", "Hat", "Bag", "Belt", "Sock", "Scarf")
    run_import(records(*titles), cfg, deps(writer=RecordingWriter(), checkpoint_store=store), job_id="job-mid")

    first = store.list("job-mid")[0]
    assert first.last_row_index == 0
    assert first.settled_row_indices == (1, 2)

    writer = RecordingWriter()
    resumed = resume_import(
        "job-mid",
        records(*titles),
        cfg,
        deps(writer=writer, checkpoint_store=store),
        checkpoint_id=first.id,
    )

    assert writer.calls == [3, 4, 5, 6]
    assert (resumed.created, resumed.failed) == (6, 0)


def linen_shirt_row():
    return RawRecord(
        1,
        {
            "title": "Linen Shirt",
            "handle": "linen-shirt",
            "sku": "LS-M",
            "option_1_title": "Size",
            "option_1_value": "M",
            "retail_price": "20",
            "currency_code": "usd",
        },
    )


def test_full_product_row_with_variant_is_written():
    writer = RecordingWriter()

    result = run_import([linen_shirt_row()], config(), deps(writer=writer), job_id="job-linen")

    assert writer.calls == [1]
    assert (result.created, result.failed, result.dead_lettered) == (1, 0, 0)
    assert result.error_distribution == {}


def test_full_product_row_with_variant_passes_dry_run():
    result = run_import([linen_shirt_row()], config(mode=ImportMode.DRY_RUN), deps(), job_id="job-linen-dry")

    assert (result.skipped, result.failed) == (1, 0)


class DiskFullSink:
    def __init__(self, failing_kind):
        self.failing_kind = failing_kind
        self.published = []

    def publish(self, job_id, kind, payload):
        if kind == self.failing_kind:
            raise OSError("disk full")
        self.published.append(kind)
        return f"memory://{job_id}/{kind}"


def test_artifact_publish_failure_keeps_job_result():
    writer = RecordingWriter()
    sink = DiskFullSink("error_rows")
    observability = ImportObservability(rules=[])

    try:
        result = run_import(
            records("Shirt", "Hat"),
            config(),
            deps(writer=writer, artifact_sink=sink, observability=observability),
            job_id="job-disk",
        )
        assert observability.snapshot().jobs_completed == 1
    finally:
        observability.close()

    assert result.created == 2
    assert sorted(writer.calls) == [1, 2]
    assert "error_rows_url" not in result.artifacts
    assert result.artifact_errors == {"error_rows": "OSError: disk full"}
    assert sink.published == ["validation_report", "result_summary", "dead_letter"]
