"""
Process-wide settings.

Values are read once from the environment and can be changed afterwards with
:func:`configure` or temporarily with :func:`override`::

    TABLEGRAD_LOG_LEVEL=DEBUG TABLEGRAD_NUM_WORKERS=4 python train.py
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, fields, replace
from typing import Iterator, Mapping

import numpy as np

_ENV_PREFIX = "TABLEGRAD_"
LOGGER_NAME = "tablegrad"
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class Settings:
    """
    Runtime knobs for the engine.

    Attributes:
        log_level: Level name for the ``tablegrad`` logger.
        num_workers: Worker threads used by the backward engine. 0 runs every
            node on the calling thread.
        allow_bogus_gradients: Let zero-gradient stubs of unknown correctness
            return zeros instead of raising NotImplementedGradient.
        default_dtype: numpy dtype name for floating Values built from Python
            numbers.
    """

    log_level: str = "WARNING"
    num_workers: int = 0
    allow_bogus_gradients: bool = False
    default_dtype: str = "float64"

    def __post_init__(self) -> None:
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ValueError(f"log_level must be a logging level name, got {self.log_level!r}")
        if self.num_workers < 0:
            raise ValueError(f"num_workers must be >= 0, got {self.num_workers}")
        if not np.issubdtype(np.dtype(self.default_dtype), np.floating):
            raise ValueError(
                f"default_dtype must be a floating dtype, got {self.default_dtype!r}"
            )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> "Settings":
        """Build settings from ``TABLEGRAD_*`` environment variables."""
        values = {}
        for field in fields(cls):
            raw = environ.get(_ENV_PREFIX + field.name.upper())
            if raw is None:
                continue
            values[field.name] = _parse(field.name, field.type, raw)
        return cls(**values)


def _parse(name: str, annotation: str, raw: str):
    if annotation == "bool":
        lowered = raw.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise ValueError(f"{_ENV_PREFIX}{name.upper()}: expected a boolean, got {raw!r}")
    if annotation == "int":
        try:
            return int(raw)
        except ValueError:
            raise ValueError(
                f"{_ENV_PREFIX}{name.upper()}: expected an integer, got {raw!r}"
            ) from None
    return raw.strip()


_settings = Settings.from_env()


def get_settings() -> Settings:
    return _settings


def apply_log_level(settings: Settings) -> None:
    """Set the ``tablegrad`` logger to ``settings.log_level``."""
    logging.getLogger(LOGGER_NAME).setLevel(settings.log_level.upper())


def configure(**changes) -> Settings:
    """Replace the current settings, keeping unspecified fields."""
    global _settings
    _settings = replace(_settings, **changes)
    if "log_level" in changes:
        apply_log_level(_settings)
    return _settings


@contextmanager
def override(**changes) -> Iterator[Settings]:
    """Temporarily change settings, restoring the previous ones on exit."""
    global _settings
    previous = _settings
    _settings = replace(previous, **changes)
    if "log_level" in changes:
        apply_log_level(_settings)
    try:
        yield _settings
    finally:
        _settings = previous
        if "log_level" in changes:
            apply_log_level(previous)
