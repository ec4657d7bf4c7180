"""Base classes shared by configuration and runtime state models.

Kept apart from config.py so that log.py can depend on them without
a circular import:
- Closeable protocol for anything holding resources
- BaseCloseable, which closes Closeable children on close()
- BaseConfig / BaseState semantic markers
"""

from __future__ import annotations

import sys
from typing import Protocol, runtime_checkable

from pydantic import BaseModel


@runtime_checkable
class Closeable(Protocol):
    """Anything that can release its resources."""

    def close(self) -> None:
        ...


class BaseCloseable(BaseModel):
    """Pydantic model that closes its Closeable fields.

    Usable as a context manager. A failing child does not stop the
    remaining children from being closed, which gives the cascade
    State -> Config -> Logger -> Sink.
    """

    def close(self):
        """Close every Closeable field, reporting failures to stderr."""
        for field_name in self.__class__.model_fields:
            child = getattr(self, field_name, None)
            if child is None or not isinstance(child, Closeable):
                continue
            try:
                child.close()
            except Exception as e:
                print(f"Warning: Error closing {field_name}: {e}",
                      file=sys.stderr)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):  # noqa: U100
        self.close()
        return False


class BaseConfig(BaseCloseable):
    """Marker for configuration sections (YAML/env/CLI)."""


class BaseState(BaseCloseable):
    """Marker for runtime state mutated while a workflow runs."""


__all__ = ["Closeable", "BaseCloseable", "BaseConfig", "BaseState"]
