from __future__ import annotations

import logging

import pytest
from pydantic import ValidationError

from personalize.config import Settings


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ("ENVIRONMENT", "ENRICHMENT_ENABLED", "SUBTLETY_MODE", "REORDER_SUBTLETY_MODE", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    settings = Settings()
    assert settings.CACHE_TTL_SECONDS == 60.0
    assert settings.HTTP_RETRY_STATUS_CODES == (500, 502, 503, 504)
    assert settings.REORDER_SUBTLETY_MODE == "balanced"
    assert settings.ENRICHMENT_ENABLED is True
    assert settings.EXPERIMENTS_FILE is None


def test_test_environment_disables_enrichment(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "test")
    assert Settings().ENRICHMENT_ENABLED is False

    monkeypatch.setenv("ENRICHMENT_ENABLED", "true")
    assert Settings().ENRICHMENT_ENABLED is True


def test_subtlety_alias_and_normalization(monkeypatch):
    monkeypatch.setenv("SUBTLETY_MODE", " Aggressive ")
    assert Settings().REORDER_SUBTLETY_MODE == "aggressive"

    monkeypatch.setenv("SUBTLETY_MODE", "reckless")
    assert Settings().REORDER_SUBTLETY_MODE == "balanced"


def test_status_codes_from_csv():
    settings = Settings(HTTP_RETRY_STATUS_CODES="429, 503")
    assert settings.HTTP_RETRY_STATUS_CODES == (429, 503)
    assert Settings(HTTP_RETRY_STATUS_CODES="").HTTP_RETRY_STATUS_CODES == ()


def test_env_file_is_read(tmp_path):
    (tmp_path / ".env").write_text("SCORING_INTERVAL_SECONDS=12\nLOG_LEVEL=debug\n", encoding="utf-8")
    settings = Settings()
    assert settings.SCORING_INTERVAL_SECONDS == 12.0
    assert settings.log_level == logging.DEBUG


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        Settings(CACHE_MAX_ENTRIES=0)
    assert Settings(LOG_LEVEL="chatty").log_level == logging.INFO
