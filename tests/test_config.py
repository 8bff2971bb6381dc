"""
Test builder configuration loading and environment overrides

Run with: pytest tests/test_config.py
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import json

import pytest

from assessment_builder.config import BuilderConfig, load_config

ENV_KEYS = (
    "BUILDER_BASE_URL", "BUILDER_API_VERSION", "BUILDER_ACCESS_TOKEN",
    "BUILDER_REQUEST_TIMEOUT", "BUILDER_DEBOUNCE_SECONDS", "BUILDER_MIN_SEARCH_CHARS",
    "BUILDER_MESSAGE_LOG_LIMIT", "BUILDER_SNAPSHOT_DIR", "BUILDER_LOG_LEVEL",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    # keep a stray .env in the repo root out of these tests
    monkeypatch.chdir(tmp_path)
    return monkeypatch


def write_config(folder, data):
    path = folder / "builder_config.json"
    path.write_text(json.dumps(data))
    return str(path)


def test_api_root_joins_version():
    config = BuilderConfig(base_url="https://content.example/api/", api_version="/v2/")
    assert config.api_root == "https://content.example/api/v2"


def test_from_dict_ignores_unknown_keys():
    config = BuilderConfig.from_dict({'version': "1.0", 'min_search_chars': 3, 'colour': "blue"})
    assert config.min_search_chars == 3
    assert config.debounce_seconds == 0.4


def test_load_from_file(clean_env, tmp_path):
    path = write_config(tmp_path, {'base_url': "https://a.example/api", 'message_log_limit': 5})

    config = load_config(path, use_env=False)

    assert config.base_url == "https://a.example/api"
    assert config.message_log_limit == 5


def test_missing_explicit_file_raises(clean_env, tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "absent.json"))


def test_defaults_without_file(clean_env):
    assert load_config() == BuilderConfig()


def test_environment_overrides_file(clean_env, tmp_path):
    path = write_config(tmp_path, {'base_url': "https://a.example/api", 'debounce_seconds': 0.4})
    clean_env.setenv("BUILDER_BASE_URL", "https://b.example/api")
    clean_env.setenv("BUILDER_DEBOUNCE_SECONDS", "0.1")
    clean_env.setenv("BUILDER_ACCESS_TOKEN", "secret")
    clean_env.setenv("BUILDER_MIN_SEARCH_CHARS", "three")

    config = load_config(path)

    assert config.base_url == "https://b.example/api"
    assert config.debounce_seconds == 0.1
    assert config.access_token == "secret"
    # unparseable values fall back to the file value
    assert config.min_search_chars == 2

    print("✓ Environment override test passed")


def test_dotenv_file_is_loaded(clean_env, tmp_path):
    (tmp_path / ".env").write_text("BUILDER_LOG_LEVEL=DEBUG\n")

    config = load_config()

    assert config.log_level == "DEBUG"
    os.environ.pop("BUILDER_LOG_LEVEL", None)


if __name__ == '__main__':
    print("\nTesting builder config...")
    print("=" * 60)

    test_api_root_joins_version()
    test_from_dict_ignores_unknown_keys()

    print("=" * 60)
    print("Config tests passed!\n")
