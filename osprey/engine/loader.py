"""Build an engine from a ``module:attribute`` reference."""

from __future__ import annotations

import importlib
import logging
from typing import Any, Mapping, Optional

from .base import EngineHandle


logger = logging.getLogger(__name__)


class EngineLoadError(RuntimeError):
    """Raised when an engine reference cannot be imported or built."""


def import_from_string(reference: str) -> Any:
    module_name, sep, attrs = reference.partition(":")
    if not sep or not module_name or not attrs:
        raise EngineLoadError(
            f"Engine reference '{reference}' must be in the form 'package.module:attribute'"
        )
    try:
        target: Any = importlib.import_module(module_name)
    except ImportError as exc:
        raise EngineLoadError(f"Could not import module '{module_name}': {exc}") from exc
    for attr in attrs.split("."):
        try:
            target = getattr(target, attr)
        except AttributeError as exc:
            raise EngineLoadError(
                f"Attribute '{attrs}' not found in module '{module_name}'"
            ) from exc
    return target


def load_engine(
    reference: str, options: Optional[Mapping[str, str]] = None
) -> EngineHandle:
    """Import ``reference`` and call it with ``options`` as keyword arguments."""

    factory = import_from_string(reference)
    if not callable(factory):
        raise EngineLoadError(f"Engine reference '{reference}' is not callable")
    logger.info("Creating engine from %s", reference)
    engine = factory(**dict(options or {}))
    if not isinstance(engine, EngineHandle):
        raise EngineLoadError(
            f"Engine built by '{reference}' does not implement the EngineHandle interface"
        )
    return engine


__all__ = ["EngineLoadError", "import_from_string", "load_engine"]
