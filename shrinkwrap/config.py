from __future__ import annotations

from typing import Any, Callable

from PySide6.QtCore import QSettings

from .errors import ConfigError
from .models import CompressionQuality, PipelineOptions

ORGANIZATION = "Shrinkwrap"
APPLICATION = "Shrinkwrap"


def default_settings() -> QSettings:
    return QSettings(ORGANIZATION, APPLICATION)


def load_options(settings: QSettings | None = None) -> PipelineOptions:
    if settings is None:
        settings = default_settings()
    defaults = PipelineOptions()
    return PipelineOptions(
        workers=_read(settings, "workers", defaults.workers, int),
        max_concurrent=_read(settings, "max_concurrent", defaults.max_concurrent, int),
        timeout=_read(settings, "timeout", defaults.timeout, float),
        quality=_read(settings, "quality", defaults.quality, CompressionQuality.parse),
        queue_capacity=_read(settings, "queue_capacity", defaults.queue_capacity, int),
    )


def save_options(options: PipelineOptions, settings: QSettings | None = None) -> None:
    if settings is None:
        settings = default_settings()
    settings.setValue("workers", options.workers)
    settings.setValue("max_concurrent", options.max_concurrent)
    settings.setValue("timeout", options.timeout)
    settings.setValue("quality", options.quality.name.lower())
    settings.setValue("queue_capacity", options.queue_capacity)
    settings.sync()


def _read(settings: QSettings, key: str, default: Any, convert: Callable[[Any], Any]) -> Any:
    if not settings.contains(key):
        return default
    value = settings.value(key)
    try:
        return convert(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid value for {key!r}: {value!r}") from exc
