"""Tests for source configuration loading and URL scoping."""

import pytest

from pipelines.errors import SourceConfigError
from sources.loader import SourceConfig, SourceLoader, CONTENT_SELECTORS


def _write(directory, name, content):
    path = directory / f"{name}.yaml"
    path.write_text(content, encoding="utf-8")
    return path


class TestSourceConfig:
    """Test suite for SourceConfig validation and URL filtering."""

    def test_defaults_selectors_from_source_type(self):
        config = SourceConfig(name="blog", domain="blogspot.com",
                              base_url="https://x.blogspot.com", source_type="blogspot")
        assert config.content_selectors == CONTENT_SELECTORS["blogspot"]

    @pytest.mark.parametrize("kwargs", [
        {"name": ""},
        {"base_url": "not-a-url"},
        {"domain": ""},
        {"source_type": "forum"},
        {"priority": 4},
        {"max_pages": 0},
    ])
    def test_invalid_configuration(self, kwargs):
        """Test that each invalid field is rejected."""
        data = {"name": "site", "domain": "example.org", "base_url": "https://example.org"}
        data.update(kwargs)
        with pytest.raises(SourceConfigError):
            SourceConfig(**data)

    def test_allows_domain_and_subdomains(self, source):
        assert source.allows("https://example.org/historia")
        assert source.allows("https://www.example.org/historia")
        assert source.allows("https://blog.example.org/post")
        assert not source.allows("https://notexample.org/")
        assert not source.allows("https://other.org/historia")

    def test_allows_applies_exclude_patterns(self, source):
        assert not source.allows("https://example.org/wp-admin/options.php")
        assert not source.allows("https://example.org/feed")

    def test_allows_applies_include_patterns(self):
        config = SourceConfig(name="site", domain="example.org", base_url="https://example.org",
                              include=["/noticies/"])
        assert config.allows("https://example.org/noticies/festa")
        assert not config.allows("https://example.org/agenda")

    def test_allows_restricts_to_base_path(self):
        """Test that a source under a sub-path only owns that path."""
        config = SourceConfig(name="corbella", domain="guimera.info",
                              base_url="https://www.guimera.info/wordpress/josepcorbella/",
                              source_type="wordpress_subdirectory")
        assert config.allows("https://www.guimera.info/wordpress/josepcorbella/obra")
        assert not config.allows("https://www.guimera.info/historia")

    def test_from_dict_missing_field(self):
        with pytest.raises(SourceConfigError, match="Missing required field"):
            SourceConfig.from_dict({"name": "site", "domain": "example.org"})

    def test_to_dict_round_trip_fields(self, source):
        data = source.to_dict()
        assert data["name"] == "example_site"
        assert data["exclude"] == ["/wp-admin", "/feed"]
        assert data["max_pages"] == 20
        assert "include" not in data


class TestSourceLoader:
    """Test suite for SourceLoader."""

    def test_bundled_guimera_info(self):
        """Test the bundled main site configuration."""
        config = SourceLoader().load_source_config("guimera_info")

        assert config.domain == "guimera.info"
        assert config.base_url == "https://www.guimera.info"
        assert config.source_type == "main_site"
        assert config.priority == 1
        assert config.max_pages == 100
        assert "/wordpress/josepcorbella" in config.exclude

    def test_bundled_sources_all_load(self):
        sources = SourceLoader().load_all_sources()
        assert "guimera_info" in sources
        priorities = [s.priority for s in sources.values()]
        assert priorities == sorted(priorities)

    def test_missing_source_returns_none(self, tmp_path):
        assert SourceLoader(tmp_path).load_source_config("absent") is None

    def test_name_is_forced_to_file_stem(self, tmp_path):
        _write(tmp_path, "local", "name: other\ndomain: example.org\nbase_url: https://example.org\n")
        assert SourceLoader(tmp_path).load_source_config("local").name == "local"

    def test_invalid_yaml_raises(self, tmp_path):
        _write(tmp_path, "broken", "name: [unclosed\n")
        with pytest.raises(SourceConfigError):
            SourceLoader(tmp_path).load_source_config("broken")

    def test_non_mapping_yaml_raises(self, tmp_path):
        _write(tmp_path, "listy", "- a\n- b\n")
        with pytest.raises(SourceConfigError):
            SourceLoader(tmp_path).load_source_config("listy")

    def test_load_all_orders_by_priority(self, tmp_path):
        _write(tmp_path, "zeta", "domain: z.org\nbase_url: https://z.org\npriority: 1\n")
        _write(tmp_path, "alpha", "domain: a.org\nbase_url: https://a.org\npriority: 3\n")
        _write(tmp_path, "beta", "domain: b.org\nbase_url: https://b.org\npriority: 1\nenabled: false\n")

        loader = SourceLoader(tmp_path)
        assert list(loader.load_all_sources()) == ["beta", "zeta", "alpha"]
        assert list(loader.get_enabled_sources()) == ["zeta", "alpha"]

    def test_cache_is_reused_until_cleared(self, tmp_path):
        _write(tmp_path, "site", "domain: example.org\nbase_url: https://example.org\n")
        loader = SourceLoader(tmp_path)

        first = loader.load_source_config("site")
        assert loader.load_source_config("site") is first

        loader.reload_cache()
        assert loader.load_source_config("site") is not first
