from storyboard.src.utils.schema import DEFAULT_CONFIG_PATH, ConfigModel


def test_default_config_loads():
    config = ConfigModel.from_path(DEFAULT_CONFIG_PATH)
    assert config.images.backend == "openai"
    assert config.references.max_images == 8
    assert config.media.url_prefix == "/media"
    assert config.logging["level"] == "INFO"


def test_environment_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("SB_MEDIA_DIR", str(tmp_path))
    monkeypatch.setenv("SB_IMAGE_BACKEND", "polling")
    monkeypatch.setenv("SB_IMAGE_SERVICE_URL", "http://gpu.local:8000")
    monkeypatch.setenv("SB_LOGLEVEL", "DEBUG")

    config = ConfigModel.load(DEFAULT_CONFIG_PATH)

    assert config.media.root_dir == str(tmp_path)
    assert config.images.backend == "polling"
    assert config.images.service_url == "http://gpu.local:8000"
    assert config.logging["level"] == "DEBUG"


def test_missing_config_file_falls_back_to_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("SB_IMAGE_BACKEND", raising=False)
    config = ConfigModel.load(tmp_path / "absent.yaml")
    assert config.llm.planning_model == "gpt-4o"
    assert config.jobs.retention_seconds == 3600
