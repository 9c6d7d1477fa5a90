from typer.testing import CliRunner

from catalog_import.main import app

runner = CliRunner()


def dir_args(tmp_path):
    return [
        "--log-dir", str(tmp_path / "logs"),
        "--report-dir", str(tmp_path / "reports"),
        "--checkpoint-dir", str(tmp_path / "checkpoints"),
        "--artifact-dir", str(tmp_path / "artifacts"),
    ]


def write_config(tmp_path):
    cfg = tmp_path / "config.yml"
    cfg.write_text(
        "\n".join([
            'api_url: "https://config.example"',
            'api_token: "cfg_token"',
            "import:",
            "  mode: execute",
            "  max_memory_mb: 256",
        ]),
        encoding="utf-8",
    )
    return str(cfg)


def test_priority_cli_over_env_over_config(tmp_path, monkeypatch):
    cfg = write_config(tmp_path)

    # ENV overrides config
    monkeypatch.setenv("CATALOG_IMPORT_API_URL", "https://env.example")
    monkeypatch.setenv("CATALOG_IMPORT_API_TOKEN", "env_token")

    # CLI overrides env
    result = runner.invoke(
        app,
        ["--config", cfg, *dir_args(tmp_path), "--api-url", "https://cli.example", "--api-token", "cli_token", "checkpoints"],
    )
    assert result.exit_code == 0
    assert "api_url=https://cli.example api_token=***" in result.stdout
    assert "cli_token" not in result.stdout
    assert "sources=['config', 'env', 'cli']" in result.stdout


def test_env_overrides_config_import_section(tmp_path, monkeypatch):
    cfg = write_config(tmp_path)
    monkeypatch.setenv("CATALOG_IMPORT_API_URL", "https://env.example")
    monkeypatch.setenv("CATALOG_IMPORT_MODE", "dry-run")

    result = runner.invoke(app, ["--config", cfg, *dir_args(tmp_path), "checkpoints"])

    assert result.exit_code == 0
    assert "api_url=https://env.example" in result.stdout
    assert "mode=dry_run" in result.stdout


def test_invalid_import_section_is_rejected(tmp_path):
    cfg = tmp_path / "config.yml"
    cfg.write_text("import:\n  batch_min_size: 500\n", encoding="utf-8")

    result = runner.invoke(app, ["--config", str(cfg), *dir_args(tmp_path), "checkpoints"])

    assert result.exit_code == 2
