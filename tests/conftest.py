import pytest

from auditflow.config import get_settings
from auditflow.database import dispose_engine


@pytest.fixture(autouse=True)
def clean_settings(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'auditflow.db'}")
    get_settings.cache_clear()
    dispose_engine()
    yield
    dispose_engine()
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def reset_job_queue():
    from auditflow.audit import queue as queue_mod

    queue_mod._job_queue = None
    yield
    queue_mod._job_queue = None
