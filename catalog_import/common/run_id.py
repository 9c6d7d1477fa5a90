from __future__ import annotations

from uuid import uuid4


def generate_run_id() -> str:
    """Новый идентификатор запуска CLI; без явного --job-id он же job_id задания."""
    return str(uuid4())
