import json
import logging
import os
import time

import httpx
from typer.testing import CliRunner

import catalog_import.main as cli_module
from catalog_import.config.config import ImportConfig, Settings
from catalog_import.infra.http.catalog_client import CatalogApiClient
from catalog_import.main import app

runner = CliRunner()


def dir_args(tmp_path):
    return [
        "--log-dir", str(tmp_path / "logs"),
        "--report-dir", str(tmp_path / "reports"),
        "--checkpoint-dir", str(tmp_path / "checkpoints"),
        "--artifact-dir", str(tmp_path / "artifacts"),
    ]


def write_csv(tmp_path, text):
    path = tmp_path / "products.csv"
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_help_shows_commands():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "run" in result.stdout
    assert "resume" in result.stdout
    assert "checkpoints" in result.stdout


def test_run_requires_csv(tmp_path):
    result = runner.invoke(app, [*dir_args(tmp_path), "run", "--dry-run"])
    assert result.exit_code == 2


def test_resume_requires_job_id(tmp_path):
    result = runner.invoke(app, [*dir_args(tmp_path), "resume"])
    assert result.exit_code == 2


def test_dry_run_writes_report_and_artifacts(tmp_path):
    csv_path = write_csv(tmp_path, "title,handle\nLinen Shirt,linen-shirt\nStraw Hat,straw-hat\n")

    result = runner.invoke(app, [*dir_args(tmp_path), "--run-id", "r1", "run", "--csv", csv_path, "--dry-run"])

    assert result.exit_code == 0
    assert "job_id=r1 processed=2" in result.stdout
    assert "skipped=2" in result.stdout
    report = json.loads((tmp_path / "reports" / "report_run_r1.json").read_text(encoding="utf-8"))
    assert report["status"] == "SUCCESS"
    assert report["meta"]["mode"] == "dry_run"
    assert (tmp_path / "artifacts" / "r1" / "result_summary.csv").exists()


def test_invalid_rows_exit_with_one(tmp_path):
    csv_path = write_csv(tmp_path, "title,handle\nLinen Shirt,linen-shirt\n,broken\n")

    result = runner.invoke(app, [*dir_args(tmp_path), "run", "--csv", csv_path, "--dry-run"])

    assert result.exit_code == 1
    assert "invalid=1" in result.stdout


def test_execute_requires_api_url(tmp_path):
    csv_path = write_csv(tmp_path, "title\nShirt\n")

    result = runner.invoke(app, [*dir_args(tmp_path), "run", "--csv", csv_path, "--no-dry-run"])

    assert result.exit_code == 2


def test_execute_writes_through_catalog_api(tmp_path, monkeypatch):
    csv_path = write_csv(tmp_path, "title,handle\nLinen Shirt,linen-shirt\nStraw Hat,straw-hat\n")
    paths = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        body = json.loads(request.content)
        return httpx.Response(201, json={"product": {"id": f"prod_{body['handle']}", "handle": body["handle"]}})

    def factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(handler)
        return CatalogApiClient(*args, **kwargs)

    monkeypatch.setattr(cli_module, "CatalogApiClient", factory)

    result = runner.invoke(
        app,
        [*dir_args(tmp_path), "--api-url", "https://catalog.local", "run", "--csv", csv_path, "--no-dry-run"],
    )

    assert result.exit_code == 0
    assert "created=2" in result.stdout
    assert paths == ["/admin/products/import", "/admin/products/import"]


def test_resume_without_checkpoint_fails(tmp_path):
    csv_path = write_csv(tmp_path, "title\nShirt\n")

    result = runner.invoke(app, [*dir_args(tmp_path), "resume", "--job-id", "nope", "--csv", csv_path, "--dry-run"])

    assert result.exit_code == 2


def test_checkpoints_lists_saved_checkpoints(tmp_path):
    csv_path = write_csv(tmp_path, "title\nShirt\n")
    first = runner.invoke(app, [*dir_args(tmp_path), "run", "--csv", csv_path, "--dry-run", "--job-id", "job-9"])
    assert first.exit_code == 0

    result = runner.invoke(app, [*dir_args(tmp_path), "checkpoints", "--job-id", "job-9"])

    assert result.exit_code == 0
    assert "job_id=job-9 batch=0" in result.stdout


def test_writer_client_leaves_retries_to_recovery(tmp_path, monkeypatch):
    created = []

    def factory(*args, **kwargs):
        created.append(kwargs)
        kwargs["transport"] = httpx.MockTransport(lambda request: httpx.Response(200, json={}))
        return CatalogApiClient(*args, **kwargs)

    monkeypatch.setattr(cli_module, "CatalogApiClient", factory)
    settings = Settings(api_url="https://catalog.local", checkpoint_dir=str(tmp_path / "checkpoints"))
    config = ImportConfig(writer_timeout_ms=5000)

    deps, closers = cli_module.buildDependencies(settings, config, logging.getLogger("test"))
    for closer in closers:
        closer.close()

    lookup_kwargs, writer_kwargs = created
    assert lookup_kwargs["retries"] == settings.retries
    assert writer_kwargs["retries"] == 0
    assert writer_kwargs["timeoutSeconds"] == 4.5
    assert deps.writer is not None


def test_cleanup_artifacts_reports_removed_jobs(tmp_path):
    old_dir = tmp_path / "artifacts" / "job-old"
    old_dir.mkdir(parents=True)
    (old_dir / "result_summary.csv").write_text("row_index,status\n", encoding="utf-8")
    stamp = time.time() - 30 * 24 * 60 * 60
    for path in (old_dir / "result_summary.csv", old_dir):
        os.utime(path, (stamp, stamp))

    result = runner.invoke(app, [*dir_args(tmp_path), "cleanup-artifacts", "--retention-days", "7"])

    assert result.exit_code == 0
    assert "scanned=1 deleted=1 retained=0 errors=0" in result.stdout
    assert not old_dir.exists()
