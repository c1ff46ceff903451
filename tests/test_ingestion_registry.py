"""Tests for the ingestion registry module."""

import tempfile
from pathlib import Path

import pytest
import yaml

from asp_catalog.core.enums import DataSourceKind
from asp_catalog.ingestion.errors import FatalIngestionError
from asp_catalog.ingestion.registry import (
    BatchConfig,
    GlobalConfig,
    PerformerResolutionConfig,
    RateLimitConfig,
    SourceConfig,
    SourceRegistry,
    default_priority,
    get_default_registry,
    reset_default_registry,
)


class TestRateLimitConfig:
    """Tests for RateLimitConfig."""

    def test_default_values(self) -> None:
        assert RateLimitConfig().min_interval_seconds == 1.0

    def test_from_dict(self) -> None:
        config = RateLimitConfig.from_dict({"min_interval_seconds": 2.5})
        assert config.min_interval_seconds == 2.5

    def test_from_dict_none(self) -> None:
        assert RateLimitConfig.from_dict(None).min_interval_seconds == 1.0


class TestSourceConfig:
    """Tests for SourceConfig."""

    def test_from_dict_minimal(self) -> None:
        """Missing fields fall back to defaults, priority to the ASP default."""
        config = SourceConfig.from_dict({"name": "mgs-html", "asp_name": "MGS", "adapter": "html_page"})

        assert config.name == "mgs-html"
        assert config.asp_name == "MGS"
        assert config.data_source == DataSourceKind.HTML
        assert config.enabled is True
        assert config.priority == 80

    def test_asp_name_defaults_to_name(self) -> None:
        config = SourceConfig.from_dict({"name": "FANZA", "adapter": "json_api"})
        assert config.asp_name == "FANZA"
        assert config.priority == 100

    def test_from_dict_full(self) -> None:
        """Adapter keys are gathered into adapter_config."""
        data = {
            "name": "fanza-api",
            "asp_name": "FANZA",
            "adapter": "json_api",
            "data_source": "api",
            "enabled": False,
            "priority": 90,
            "url_template": "https://api.example.com/{id}",
            "strip_prefixes": ["^FANZA-"],
            "rate_limit": {"min_interval_seconds": 3},
            "root": "item",
            "field_map": {"title": "name"},
            "custom_config": {"extra": 1},
        }
        config = SourceConfig.from_dict(data)

        assert config.enabled is False
        assert config.data_source == DataSourceKind.API
        assert config.priority == 90
        assert config.rate_limit.min_interval_seconds == 3.0
        assert config.strip_prefixes == ["^FANZA-"]
        assert config.adapter_config == {"extra": 1, "root": "item", "field_map": {"title": "name"}}

    def test_default_rate_limit_is_inherited(self) -> None:
        default = RateLimitConfig(min_interval_seconds=5.0)
        config = SourceConfig.from_dict({"name": "x", "adapter": "html_page"}, default)
        assert config.rate_limit.min_interval_seconds == 5.0

    def test_domain_and_build_url(self, mgs_source) -> None:
        assert mgs_source.domain == "mgs.example.com"
        assert mgs_source.build_url("SIRO-5000") == "https://mgs.example.com/product/SIRO-5000/"

    def test_build_url_without_template(self, b10f_source) -> None:
        assert b10f_source.domain is None
        with pytest.raises(ValueError):
            b10f_source.build_url("1")


class TestDefaultPriority:
    @pytest.mark.parametrize(
        "asp_name, expected",
        [("FANZA", 100), ("mgs", 80), ("SOKMIL", 60), ("FC2", 30), ("HEYZO", 20), ("UNKNOWN", 10)],
    )
    def test_default_priorities(self, asp_name, expected) -> None:
        assert default_priority(asp_name) == expected


class TestGlobalConfig:
    """Tests for GlobalConfig, BatchConfig and PerformerResolutionConfig."""

    def test_defaults(self) -> None:
        config = GlobalConfig.from_dict(None)
        assert config.max_retries == 3
        assert config.batch.limit == 500
        assert config.batch.time_budget_seconds == 150.0

    def test_batch_budget_can_be_disabled(self) -> None:
        assert BatchConfig.from_dict({"time_budget_seconds": None}).time_budget_seconds is None

    def test_performer_resolution(self) -> None:
        config = PerformerResolutionConfig.from_dict(
            {
                "min_create_confidence": 0.8,
                "cache": {"max_size": 5, "ttl_seconds": 1},
                "denylist": ["素人"],
                "lookups": [
                    {"name": "index", "type": "index"},
                    {"name": "wiki", "url_template": "https://wiki.example.com/?q={code}"},
                ],
            }
        )

        assert config.min_create_confidence == 0.8
        assert config.lookup_confidence == 0.9
        assert config.cache_max_size == 5
        assert [l.type for l in config.lookups] == ["index", "http"]
        assert config.lookups[1].link_selector == "a"


class TestSourceRegistry:
    """Tests for SourceRegistry."""

    @pytest.fixture
    def config_file(self) -> Path:
        config_data = {
            "global": {"user_agent": "TestAgent/1.0", "batch": {"limit": 50}},
            "sources": [
                {"name": "fanza-api", "asp_name": "FANZA", "adapter": "json_api", "enabled": True},
                {"name": "mgs-html", "asp_name": "MGS", "adapter": "html_page", "enabled": False},
            ],
        }
        with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False, encoding="utf-8") as f:
            yaml.dump(config_data, f)
            return Path(f.name)

    def test_load_config(self, config_file: Path) -> None:
        registry = SourceRegistry()
        registry.load_config(config_file)

        assert registry.global_config.user_agent == "TestAgent/1.0"
        assert registry.global_config.batch.limit == 50
        assert len(registry.list_sources()) == 2
        assert registry.config_path == config_file.resolve()
        config_file.unlink()

    def test_load_missing_file(self) -> None:
        with pytest.raises(FileNotFoundError):
            SourceRegistry().load_config("/nonexistent/sources.yaml")

    def test_list_enabled_sources(self, config_file: Path) -> None:
        registry = SourceRegistry()
        registry.load_config(config_file)

        assert [s.name for s in registry.list_enabled_sources()] == ["fanza-api"]
        config_file.unlink()

    def test_enable_disable(self, registry) -> None:
        assert registry.set_enabled("fanza-api", False)
        assert registry.get_source("fanza-api").enabled is False
        assert registry.set_enabled("fanza-api", True)
        assert registry.get_source("fanza-api").enabled is True
        assert not registry.set_enabled("missing", True)

    def test_register_replaces(self, registry, fanza_source) -> None:
        replacement = SourceConfig(name="fanza-api", asp_name="FANZA", adapter="json_api", priority=1)
        registry.register(replacement)
        assert registry.get_source("fanza-api").priority == 1


class TestDefaultRegistry:
    """Tests for the process-wide registry."""

    def setup_method(self) -> None:
        reset_default_registry()

    def teardown_method(self) -> None:
        reset_default_registry()

    def test_missing_config_path_is_fatal(self, monkeypatch) -> None:
        monkeypatch.setenv("SOURCES_CONFIG_PATH", "/nonexistent/sources.yaml")
        with pytest.raises(FatalIngestionError):
            get_default_registry()

    def test_loads_from_env(self, monkeypatch, tmp_path) -> None:
        path = tmp_path / "sources.yaml"
        path.write_text(
            yaml.dump({"sources": [{"name": "duga", "asp_name": "DUGA", "adapter": "html_page"}]}),
            encoding="utf-8",
        )
        monkeypatch.setenv("SOURCES_CONFIG_PATH", str(path))

        registry = get_default_registry()

        assert registry.get_source("duga").priority == 40
        assert get_default_registry() is registry
