"""Tests for configuration loading."""

from pathlib import Path

from syosetu_translator.config import AppConfig, PipelineConfig, get_config, set_config


class TestPipelineConfig:
    """Tests for PipelineConfig."""

    def test_default_values(self, monkeypatch):
        """Test default configuration values."""
        for name in ("PIPELINE_FETCH_WORKERS", "PIPELINE_MAX_ATTEMPTS", "PIPELINE_QUEUE_SIZE"):
            monkeypatch.delenv(name, raising=False)
        config = PipelineConfig()

        assert config.fetch_workers == 3
        assert config.translator_workers == 2
        assert config.queue_size == 10
        assert config.max_attempts == 3

    def test_environment_override(self, monkeypatch):
        """PIPELINE_ variables override defaults."""
        monkeypatch.setenv("PIPELINE_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("PIPELINE_RATE_LIMIT_MAX_DELAY", "30")

        config = PipelineConfig()

        assert config.max_attempts == 5
        assert config.rate_limit_max_delay == 30.0


class TestAppConfig:
    """Tests for AppConfig."""

    def test_load_env_file(self, tmp_path, monkeypatch):
        """Values from an .env file reach the sub-configs."""
        for name in ("LLM_MODEL", "BOOKS_DIR"):
            # Registered first so teardown removes what load_dotenv sets
            monkeypatch.setenv(name, "")
            monkeypatch.delenv(name)
        env_file = tmp_path / ".env"
        env_file.write_text("LLM_MODEL=test-model\nBOOKS_DIR=library\n", encoding="utf-8")

        config = AppConfig.load(env_file)

        assert config.llm.model == "test-model"
        assert config.books_dir == Path("library")

    def test_set_config(self, monkeypatch):
        """The global config can be replaced."""
        monkeypatch.setattr("syosetu_translator.config._config", None)
        config = AppConfig(pipeline=PipelineConfig(fetch_workers=7))
        set_config(config)
        assert get_config().pipeline.fetch_workers == 7
