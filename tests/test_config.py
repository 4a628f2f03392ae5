"""Tests for configuration loading."""

from pathlib import Path

import yaml

from recallkit.config import AppConfig, get_config, load_config, reset_config


def test_config_loads_from_yaml(isolated_db):
    cfg = get_config()
    assert cfg.database.path == str(isolated_db / "test.db")
    assert cfg.llm.enabled is False
    assert cfg.llm.api_key == "test-key"
    assert cfg.ingest.priority_delay == 0


def test_config_defaults_fill_missing_sections(isolated_db):
    cfg = get_config()
    assert cfg.retrieval.context_limit == 6
    assert cfg.retrieval.disambiguation_margin == 0.05
    assert cfg.ingest.section_max_chars == 2000
    assert cfg.ingest.fallback_max_chunks == 10
    assert cfg.ingest.max_attempts == 3
    assert cfg.workspace.default_id == "local"
    assert cfg.embedding.provider == "hashing"
    assert cfg.embedding.dimensions == 384


def test_config_is_cached_until_reset(isolated_db):
    first = get_config()
    assert load_config("does-not-exist.yaml") is first
    reset_config()
    (isolated_db / "config.yaml").unlink()
    fresh = load_config(isolated_db / "missing.yaml")
    assert fresh is not first


def test_all_endpoints_primary_first():
    cfg = AppConfig(**{
        "llm": {
            "model": "primary",
            "endpoints": [
                {"base_url": "http://b", "model": "second"},
                {"base_url": "http://c", "model": "third"},
            ],
        }
    })
    assert [ep.model for ep in cfg.llm.all_endpoints()] == ["primary", "second", "third"]


def test_template_config_is_valid():
    template = Path(__file__).parent.parent / "recallkit" / "config.cp.yaml"
    data = yaml.safe_load(template.read_text())
    cfg = AppConfig(**data)
    assert cfg.llm.enabled is False
    assert "pdf" in cfg.ingest.extensions
