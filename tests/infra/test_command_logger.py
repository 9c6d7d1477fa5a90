import logging
from pathlib import Path

from catalog_import.infra.logging.setup import closeLogger, createCommandLogger, logEvent


def test_command_log_line_carries_run_id_and_component(tmp_path):
    logger, logFile = createCommandLogger("import", str(tmp_path), "run-42", "INFO")
    logEvent(logger, logging.INFO, "run-42", "batch", "Batch 1 done")
    logger.info("no extras")
    closeLogger(logger)

    lines = Path(logFile).read_text(encoding="utf-8").splitlines()
    assert lines[0].endswith("INFO runId=run-42 comp=batch msg=Batch 1 done")
    assert lines[1].endswith("INFO runId=run-42 comp=core msg=no extras")
