"""Tests for SiteScribeConfig loading and validation."""

import json

import pytest

from sitescribe.config import ChunkingConfig, SiteScribeConfig, SourceConfig
from sitescribe.errors import ConfigMissingError


@pytest.mark.unit
class TestValidation:
    """Test cross-field validation."""

    def test_defaults_are_valid(self, default_config):
        """Test the default config validates."""
        default_config.validate()
        assert default_config.scope.mode == "fixed"
        assert default_config.chunking.max_chars == 2200
        assert default_config.ranking.aggregation_cap == 5

    def test_overlap_must_be_below_max_chars(self, tmp_path):
        """Test overlap_chars >= max_chars is rejected."""
        with pytest.raises(ConfigMissingError, match="overlap_chars"):
            SiteScribeConfig(root_dir=tmp_path, chunking=ChunkingConfig(max_chars=500, overlap_chars=500))

    def test_min_chars_must_not_exceed_max_chars(self, tmp_path):
        """Test min_chars > max_chars is rejected."""
        with pytest.raises(ConfigMissingError, match="min_chars"):
            SiteScribeConfig(root_dir=tmp_path, chunking=ChunkingConfig(max_chars=300, min_chars=400, overlap_chars=0))

    def test_unknown_scope_mode(self, tmp_path):
        """Test unknown scope modes are rejected."""
        with pytest.raises(ConfigMissingError, match="scope.mode"):
            SiteScribeConfig.from_dict({"root_dir": str(tmp_path), "scope": {"mode": "branch"}})

    def test_negative_page_weight(self, tmp_path):
        """Test negative page weights are rejected."""
        with pytest.raises(ConfigMissingError, match="page_weights"):
            SiteScribeConfig.from_dict({"root_dir": str(tmp_path), "ranking": {"page_weights": {"/x": -1}}})

    def test_config_error_is_value_error(self):
        """Test config errors can be caught as ValueError."""
        assert issubclass(ConfigMissingError, ValueError)


@pytest.mark.unit
class TestLoading:
    """Test dict, file and environment loading."""

    def test_from_dict_nested_sections(self, tmp_path):
        """Test nested sections become dataclasses."""
        config = SiteScribeConfig.from_dict(
            {
                "project_id": "docs",
                "root_dir": str(tmp_path),
                "source": {"mode": "crawl", "crawl": {"base_url": "https://docs.example.com"}},
                "ranking": {"weights": {"incoming_links": 0.2}, "page_weights": {"/blog/**": 0.5}},
            }
        )

        assert config.project_id == "docs"
        assert config.source.crawl.base_url == "https://docs.example.com"
        assert config.ranking.weights.incoming_links == 0.2
        assert config.ranking.weights.depth == 0.03
        assert config.ranking.page_weights == {"/blog/**": 0.5}

    def test_from_dict_unknown_key(self, tmp_path):
        """Test unknown keys are reported with their path."""
        with pytest.raises(ConfigMissingError, match="chunking.size"):
            SiteScribeConfig.from_dict({"root_dir": str(tmp_path), "chunking": {"size": 10}})

    def test_from_file_yaml_resolves_root_dir(self, tmp_path):
        """Test a relative root_dir resolves against the config file location."""
        (tmp_path / "site").mkdir()
        config_file = tmp_path / "sitescribe.yaml"
        config_file.write_text("project_id: yaml-site\nroot_dir: site\nstate:\n  write_mirror: true\n")

        config = SiteScribeConfig.from_file(config_file)

        assert config.project_id == "yaml-site"
        assert config.root_dir == tmp_path / "site"
        assert config.state.write_mirror is True
        assert config.state_dir == tmp_path / "site" / ".sitescribe"

    def test_from_file_json(self, tmp_path):
        """Test JSON config files load."""
        config_file = tmp_path / "sitescribe.json"
        config_file.write_text(json.dumps({"project_id": "json-site", "exclude": ["/private/**"]}))

        config = SiteScribeConfig.from_file(config_file)

        assert config.project_id == "json-site"
        assert config.exclude == ["/private/**"]
        assert config.root_dir == tmp_path

    def test_from_file_missing(self, tmp_path):
        """Test a missing config file raises ConfigMissingError."""
        with pytest.raises(ConfigMissingError, match="not found"):
            SiteScribeConfig.from_file(tmp_path / "nope.yaml")

    def test_from_file_malformed(self, tmp_path):
        """Test unparseable config files raise ConfigMissingError."""
        config_file = tmp_path / "sitescribe.json"
        config_file.write_text("{not json")
        with pytest.raises(ConfigMissingError, match="Failed to parse"):
            SiteScribeConfig.from_file(config_file)

    def test_from_env_overrides(self, tmp_path, monkeypatch):
        """Test prefixed environment variables override file values."""
        config_file = tmp_path / "sitescribe.json"
        config_file.write_text(json.dumps({"project_id": "file-site"}))
        monkeypatch.delenv("PORT", raising=False)
        monkeypatch.delenv("HOST", raising=False)
        monkeypatch.setenv("SITESCRIBE_PROJECT_ID", "env-site")
        monkeypatch.setenv("SITESCRIBE_EMBEDDING_MODEL", "text-embedding-3-large")
        monkeypatch.setenv("SITESCRIBE_RERANK_ENABLED", "true")
        monkeypatch.setenv("SITESCRIBE_PORT", "9100")

        config = SiteScribeConfig.from_env(config_path=config_file)

        assert config.project_id == "env-site"
        assert config.embeddings.model == "text-embedding-3-large"
        assert config.rerank.enabled is True
        assert config.api.port == 9100


@pytest.mark.unit
class TestSourceMode:
    """Test source mode resolution."""

    def test_auto_detects_static_output(self, site_config):
        """Test the build directory wins auto-detection."""
        assert site_config.resolve_source_mode() == "static-output"

    def test_auto_detect_without_sources(self, default_config):
        """Test no build dir and no other source raises."""
        with pytest.raises(ConfigMissingError, match="No source found"):
            default_config.resolve_source_mode()

    def test_override_wins(self, site_config):
        """Test an explicit override is validated and returned."""
        with pytest.raises(ConfigMissingError, match="crawl.base_url"):
            site_config.resolve_source_mode("crawl")

    def test_content_files_requires_globs(self, tmp_path):
        """Test content-files mode without globs raises."""
        config = SiteScribeConfig(root_dir=tmp_path, source=SourceConfig(mode="content-files"))
        with pytest.raises(ConfigMissingError, match="globs"):
            config.resolve_source_mode()
