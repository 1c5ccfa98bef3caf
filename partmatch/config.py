"""
Configuration loading for partmatch.

All tunables (strategy selection, per-matcher thresholds, Kalman noise,
script logging) live in config.yaml at the project root. The parsed file is
cached in a module-level dict so every matcher sees the same values.

Usage:
    from partmatch.config import get_config
    config = get_config()
    affine_config = config["matching"]["iterative_affine"]
"""

import yaml
from pathlib import Path
from typing import Any, Dict, Optional


_config_instance: Optional[Dict[str, Any]] = None


def get_project_root() -> Path:
    """
    Return the first directory above this package that holds config.yaml.

    Raises:
        FileNotFoundError: If no ancestor directory contains config.yaml.
    """
    directory = Path(__file__).resolve().parent

    while directory != directory.parent:
        if (directory / "config.yaml").exists():
            return directory
        directory = directory.parent

    raise FileNotFoundError(
        f"config.yaml not found above {Path(__file__).resolve().parent}; "
        "pass an explicit path to load_config() instead."
    )


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Parse a YAML configuration file.

    Args:
        config_path: File to read. Defaults to config.yaml in the project root.

    Returns:
        The parsed mapping; an empty file yields an empty dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    path = get_project_root() / "config.yaml" if config_path is None else Path(config_path)

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def get_config(reload: bool = False) -> Dict[str, Any]:
    """
    Return the cached project configuration, reading it on first use.

    Pass ``reload=True`` after editing config.yaml at runtime.
    """
    global _config_instance

    if _config_instance is None or reload:
        _config_instance = load_config()

    return _config_instance


def get_section(section_name: str) -> Dict[str, Any]:
    """
    Return one top-level section ("inspection", "matching", "kalman", ...).

    Raises:
        KeyError: If config.yaml has no such section.
    """
    config = get_config()

    if section_name not in config:
        raise KeyError(
            f"No '{section_name}' section in config.yaml "
            f"(have: {', '.join(config)})"
        )

    return config[section_name]


# Convenience functions for commonly used configuration sections
def get_inspection_config() -> Dict[str, Any]:
    """Get inspection (strategy selection) configuration."""
    return get_section("inspection")


def get_matching_config() -> Dict[str, Any]:
    """Get configuration for all matching strategies."""
    return get_section("matching")


def get_topology_config() -> Dict[str, Any]:
    """Get topology (graph) matcher configuration."""
    return get_matching_config().get("topology", {})


def get_cross_ratio_config() -> Dict[str, Any]:
    """Get cross-ratio fingerprint matcher configuration."""
    return get_matching_config().get("cross_ratio", {})


def get_iterative_affine_config() -> Dict[str, Any]:
    """Get iterative affine matcher configuration."""
    return get_matching_config().get("iterative_affine", {})


def get_kalman_config() -> Dict[str, Any]:
    """Get temporal smoothing configuration."""
    return get_section("kalman")


def get_logging_config() -> Dict[str, Any]:
    """
    Get logging configuration for scripts.

    Returns:
        Dict with "level" and "format"; defaults when the section is absent.
    """
    config = get_config()
    logging_config = {"level": "INFO", "format": "%(asctime)s %(name)s %(levelname)s: %(message)s"}
    logging_config.update(config.get("logging", {}) or {})
    return logging_config


if __name__ == "__main__":
    config = get_config()
    print(f"Loaded {get_project_root() / 'config.yaml'}: sections {list(config)}")
    print(f"Default strategy: {get_inspection_config()['strategy']}")
    print(f"Topology k: {get_topology_config().get('topology_k')}")
