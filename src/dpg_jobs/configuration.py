"""
Service configuration.

Defaults live in the packaged ``config/config.yaml``. Values from the
environment (and a ``.env`` file, if present) override them: a variable named
``DPG_IIIF__BUCKET`` replaces ``iiif.bucket``.
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

logger = logging.getLogger(__name__)

CONFIG_PATH = Path(__file__).resolve().parent / "config" / "config.yaml"
ENV_PREFIX = "DPG_"


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    """Translate DPG_* variables into a nested override mapping."""
    overrides: Dict[str, Any] = {}
    for name, raw in environ.items():
        if not name.startswith(ENV_PREFIX):
            continue
        keys = name[len(ENV_PREFIX):].lower().split("__")
        node = overrides
        for key in keys[:-1]:
            node = node.setdefault(key, {})
        # yaml parsing gives ints/bools/floats their natural types
        node[keys[-1]] = yaml.safe_load(raw) if raw != "" else ""
    return overrides


def make_runtime_config(
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> DictConfig:
    """
    Build the effective configuration.

    Args:
        overrides: Explicit values merged last (used by tests)
        environ: Environment to read DPG_* overrides from (default: os.environ)

    Raises:
        omegaconf.errors.ConfigKeyError: If an override names an unknown key
    """
    load_dotenv()
    base = OmegaConf.create(OmegaConf.to_container(_load_default_config(), resolve=False))
    OmegaConf.set_struct(base, True)

    env_config = OmegaConf.create(_env_overrides(os.environ if environ is None else environ))
    merged = OmegaConf.merge(base, env_config, OmegaConf.create(overrides or {}))
    return DictConfig(merged)


def log_config(config: DictConfig) -> None:
    """Write the effective configuration to the log, hiding secrets."""
    container = OmegaConf.to_container(config, resolve=True)
    for section, value in container.items():  # type: ignore[union-attr]
        if isinstance(value, dict):
            for key, item in value.items():
                if "key" in key or "pass" in key:
                    item = "****" if item else ""
                logger.info(f"[CONFIG] {section}.{key} = [{item}]")
        else:
            logger.info(f"[CONFIG] {section} = [{value}]")
