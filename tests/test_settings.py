from __future__ import annotations

import pytest

from run_orchestrator.config.settings import Settings


def test_settings_read_prefixed_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RUN_ORCHESTRATOR_SCRAPE_TIMEOUT_S", "15")
    monkeypatch.setenv("RUN_ORCHESTRATOR_MAX_RUN_RETRIES", "5")

    settings = Settings()

    assert settings.scrape_timeout_s == 15.0
    assert settings.max_run_retries == 5


def test_database_url_falls_back_to_shared_variable(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ORCHESTRATOR_DATABASE_URL", "postgresql://shared/db")

    assert Settings(database_url="").resolved_database_url() == "postgresql://shared/db"
    assert (
        Settings(database_url="postgresql://own/db").resolved_database_url()
        == "postgresql://own/db"
    )


@pytest.mark.parametrize(
    ("http_url", "ws_url"),
    [
        ("http://workers:8080/", "ws://workers:8080"),
        ("https://workers.example.com", "wss://workers.example.com"),
    ],
)
def test_worker_ws_url_derived_from_http_url(http_url: str, ws_url: str) -> None:
    settings = Settings(worker_service_url=http_url, worker_service_ws_url="")

    assert settings.resolved_worker_ws_url() == ws_url


def test_explicit_worker_ws_url_wins() -> None:
    settings = Settings(worker_service_ws_url="ws://events:9000/")

    assert settings.resolved_worker_ws_url() == "ws://events:9000"
