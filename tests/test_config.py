"""
Unit Tests for Configuration Loading

Usage:
    pytest tests/test_config.py -v
"""

import sys
from pathlib import Path

import pytest
import yaml

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from partmatch import config as config_module
from partmatch.config import (
    get_config,
    get_cross_ratio_config,
    get_iterative_affine_config,
    get_kalman_config,
    get_logging_config,
    get_project_root,
    get_section,
    get_topology_config,
    load_config,
)


class TestProjectConfig:
    """Tests against the shipped config.yaml."""

    def test_project_root(self):
        assert (get_project_root() / "config.yaml").exists()

    def test_sections_present(self):
        config = get_config(reload=True)
        for section in ("inspection", "matching", "kalman", "logging"):
            assert section in config

    def test_singleton(self):
        assert get_config() is get_config()

    def test_matcher_defaults(self):
        assert get_topology_config()["topology_k"] == 4
        assert get_topology_config()["max_match_cost"] == 0.5
        assert get_cross_ratio_config()["assignment_cost"] == "euclidean"
        assert get_iterative_affine_config()["random_seed"] == 42
        assert get_iterative_affine_config()["max_occlusion_rate"] == 0.5
        assert get_kalman_config()["measurement_noise"] == 5.0

    def test_missing_section_raises(self):
        with pytest.raises(KeyError):
            get_section("does_not_exist")

    def test_logging_config(self):
        logging_config = get_logging_config()
        assert logging_config["level"] == "INFO"
        assert "%(message)s" in logging_config["format"]


class TestLoadConfig:
    """Tests for load_config with explicit paths."""

    def test_load_custom_file(self, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text(yaml.safe_dump({"inspection": {"strategy": "cross_ratio"}}))
        assert load_config(str(path))["inspection"]["strategy"] == "cross_ratio"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(str(path)) == {}

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("inspection: [unclosed")
        with pytest.raises(yaml.YAMLError):
            load_config(str(path))

    def test_reload_replaces_instance(self, monkeypatch):
        monkeypatch.setattr(config_module, "_config_instance", {"inspection": {}})
        assert "matching" not in get_config()
        assert "matching" in get_config(reload=True)
