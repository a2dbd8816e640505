"""
Engine configuration tests.

Covers:
- The packaged default file parses and carries the reference catalog
- parse_settings defaults and validation of out-of-range values
- FISCAL_ENGINE_CONFIG and DATABASE_URL environment overrides
- Checksum identity
- FiscalEngine.from_settings builds a working engine
"""

from pathlib import Path

import pytest
import yaml

from fiscal_config import (
    CONFIG_ENV_VAR,
    DATABASE_URL_ENV_VAR,
    DEFAULT_CONFIG_PATH,
    EngineSettings,
    get_active_settings,
    load_settings,
    parse_settings,
)
from fiscal_kernel.db.engine import reset_engine
from fiscal_kernel.domain.values import AuditActor
from fiscal_services import FiscalEngine


@pytest.fixture
def no_env(monkeypatch):
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    monkeypatch.delenv(DATABASE_URL_ENV_VAR, raising=False)


def _write(tmp_path: Path, data: dict) -> Path:
    path = tmp_path / "engine.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


class TestDefaultConfig:

    def test_default_file_exists(self):
        assert DEFAULT_CONFIG_PATH.is_file()

    def test_default_catalog(self, no_env):
        settings = get_active_settings()
        catalog = settings.catalog
        assert {r.code for r in catalog.regimes} == {"SIMPLES_NACIONAL", "LUCRO_PRESUMIDO", "LUCRO_REAL"}
        assert {t.code for t in catalog.tax_types} == {"ICMS", "ISS", "PIS", "COFINS", "IPI"}
        assert {k.periodicity for k in catalog.obligation_kinds} == {"mensal", "trimestral", "anual"}
        assert not catalog.is_empty

    def test_default_runtime_settings(self, no_env):
        settings = get_active_settings()
        assert settings.is_sqlite
        assert settings.audit_page_size == 50
        assert settings.audit_max_page_size == 500
        assert len(settings.checksum) == 64


class TestParseSettings:

    def test_empty_dict_gives_defaults(self):
        settings = parse_settings({})
        defaults = EngineSettings()
        assert settings.database_url == defaults.database_url
        assert settings.lock_timeout_seconds == defaults.lock_timeout_seconds
        assert settings.catalog.is_empty

    def test_log_level_normalized(self):
        assert parse_settings({"engine": {"log_level": "debug"}}).log_level == "DEBUG"

    @pytest.mark.parametrize(
        "data",
        [
            {"engine": {"log_level": "LOUD"}},
            {"engine": {"lock_timeout_seconds": 0}},
            {"engine": {"pool_size": 0}},
            {"audit": {"page_size": 0}},
            {"audit": {"page_size": 100, "max_page_size": 10}},
        ],
    )
    def test_invalid_values_rejected(self, data):
        with pytest.raises(ValueError):
            parse_settings(data)

    def test_catalog_entry_missing_name(self):
        with pytest.raises(KeyError):
            parse_settings({"catalog": {"regimes": [{"code": "X"}]}})

    def test_checksum_tracks_content(self):
        one = parse_settings({"engine": {"echo": False}})
        same = parse_settings({"engine": {"echo": False}})
        other = parse_settings({"engine": {"echo": True}})
        assert one.checksum == same.checksum
        assert one.checksum != other.checksum


class TestEnvironmentOverrides:

    def test_config_path_from_env(self, no_env, monkeypatch, tmp_path):
        path = _write(tmp_path, {"audit": {"page_size": 7, "max_page_size": 9}})
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))
        settings = get_active_settings()
        assert settings.audit_page_size == 7
        assert settings.audit_max_page_size == 9

    def test_explicit_path_wins_over_env(self, no_env, monkeypatch, tmp_path):
        monkeypatch.setenv(CONFIG_ENV_VAR, str(tmp_path / "missing.yaml"))
        path = _write(tmp_path, {"engine": {"log_level": "ERROR"}})
        assert get_active_settings(path).log_level == "ERROR"

    def test_database_url_override(self, no_env, monkeypatch):
        monkeypatch.setenv(DATABASE_URL_ENV_VAR, "postgresql+psycopg://u:p@db/fiscal")
        settings = get_active_settings()
        assert settings.database_url == "postgresql+psycopg://u:p@db/fiscal"
        assert not settings.is_sqlite

    def test_missing_file(self, no_env, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings(tmp_path / "nope.yaml")

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("engine: [unclosed")
        with pytest.raises(yaml.YAMLError):
            load_settings(path)


class TestFromSettings:

    def test_builds_engine_with_schema(self, no_env, tmp_path):
        settings = parse_settings(
            {
                "engine": {"database_url": f"sqlite:///{tmp_path / 'fresh.db'}"},
                "catalog": {"regimes": [{"code": "SIMPLES_NACIONAL", "name": "Simples"}]},
            }
        )
        try:
            engine = FiscalEngine.from_settings(settings, create_schema=True)
            engine.seed_reference_data(AuditActor(user_id="setup"))
            assert [r.code for r in engine.list_regimes()] == ["SIMPLES_NACIONAL"]
            assert engine.validate_audit_chain()
        finally:
            reset_engine()
