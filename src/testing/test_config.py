import json

import pytest

import config
from config import ConfigManager


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ('CHARGEQA_DB_URL', 'CHARGEQA_QUERY_TIMEOUT', 'CHARGEQA_LLM_ENABLED', 'CHARGEQA_CONFIG'):
        monkeypatch.delenv(var, raising=False)
    config.reset_config()
    yield
    config.reset_config()


def test_defaults(tmp_path):
    cfg = ConfigManager(str(tmp_path / 'missing.json')).config
    assert cfg.store.query_timeout_seconds == 25
    assert cfg.llm.enabled is True
    assert cfg.planner.max_display_rows == 20
    assert '占比' in cfg.planner.model_only_cues


def test_file_overrides(tmp_path):
    path = tmp_path / 'system_config.json'
    path.write_text(json.dumps({
        'store': {'url': 'sqlite:///data.db', 'bogus': 1},
        'planner': {'model_only_cues': ['趋势']},
        'environment': 'test',
    }), encoding='utf-8')
    cfg = ConfigManager(str(path)).config
    assert cfg.store.url == 'sqlite:///data.db'
    assert cfg.planner.model_only_cues == ('趋势',)
    assert cfg.environment == 'test'


def test_invalid_file_keeps_defaults(tmp_path):
    path = tmp_path / 'broken.json'
    path.write_text('{not json', encoding='utf-8')
    assert ConfigManager(str(path)).config.store.url is None


def test_environment_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv('CHARGEQA_DB_URL', ':memory:')
    monkeypatch.setenv('CHARGEQA_QUERY_TIMEOUT', '5')
    monkeypatch.setenv('CHARGEQA_LLM_ENABLED', 'false')
    cfg = ConfigManager(str(tmp_path / 'none.json')).config
    assert cfg.store.url == ':memory:'
    assert cfg.store.query_timeout_seconds == 5
    assert cfg.llm.enabled is False


def test_bad_environment_value_is_ignored(tmp_path, monkeypatch):
    monkeypatch.setenv('CHARGEQA_QUERY_TIMEOUT', 'soon')
    cfg = ConfigManager(str(tmp_path / 'none.json')).config
    assert cfg.store.query_timeout_seconds == 25


def test_validation(tmp_path):
    manager = ConfigManager(str(tmp_path / 'none.json'))
    assert manager.validate_config()
    manager.config.store.query_timeout_seconds = 0
    assert not manager.validate_config()


def test_global_config_is_cached_until_reset(tmp_path, monkeypatch):
    monkeypatch.setenv('CHARGEQA_CONFIG', str(tmp_path / 'none.json'))
    first = config.get_config()
    assert config.get_config() is first
    config.reset_config()
    assert config.get_config() is not first
