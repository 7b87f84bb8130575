"""Template and execution stores."""

from __future__ import annotations

import os
from typing import Optional

from ..config import StepgateConfig, load_config
from .base import ExecutionStore, TemplateStore
from .http import ApiClient, HttpExecutionStore, HttpTemplateStore
from .inmemory import InMemoryExecutionStore, InMemoryTemplateStore
from .sqlite import SQLiteTemplateStore

_template_store_instance: TemplateStore | None = None
_execution_store_instance: ExecutionStore | None = None


def _backend(backend: Optional[str], config: StepgateConfig) -> str:
    return (backend or os.getenv("STEPGATE_STORE") or config.store.backend).lower()


def get_template_store(
    backend: Optional[str] = None, config: Optional[StepgateConfig] = None
) -> TemplateStore:
    """Factory function to obtain the configured template store.

    ``sqlite`` reads its file path from ``database_url`` (``sqlite://path``).
    Without explicit arguments the previously created store is reused.
    """

    global _template_store_instance
    if _template_store_instance is not None and backend is None and config is None:
        return _template_store_instance

    config = config or load_config()
    backend = _backend(backend, config)

    if backend == "inmemory":
        _template_store_instance = InMemoryTemplateStore()
    elif backend == "sqlite":
        database_url = config.database_url or "sqlite://stepgate.db"
        if not database_url.startswith("sqlite://"):
            raise ValueError(f"Unsupported database backend: {database_url}")
        _template_store_instance = SQLiteTemplateStore(
            database_url.replace("sqlite://", "", 1)
        )
    elif backend == "http":
        _template_store_instance = HttpTemplateStore(ApiClient(config.api))
    else:
        raise ValueError(f"Unsupported store backend: {backend}")

    return _template_store_instance


def get_execution_store(
    backend: Optional[str] = None, config: Optional[StepgateConfig] = None
) -> ExecutionStore:
    """Factory function to obtain the configured execution store.

    Local backends run instances in memory on top of the template store.
    """

    global _execution_store_instance
    if _execution_store_instance is not None and backend is None and config is None:
        return _execution_store_instance

    config = config or load_config()
    backend = _backend(backend, config)

    if backend in ("inmemory", "sqlite"):
        _execution_store_instance = InMemoryExecutionStore(
            get_template_store(backend, config)
        )
    elif backend == "http":
        _execution_store_instance = HttpExecutionStore(ApiClient(config.api))
    else:
        raise ValueError(f"Unsupported store backend: {backend}")

    return _execution_store_instance


def reset_stores() -> None:
    """Forget the cached store instances."""
    global _template_store_instance, _execution_store_instance
    _template_store_instance = None
    _execution_store_instance = None


__all__ = [
    "ApiClient",
    "ExecutionStore",
    "HttpExecutionStore",
    "HttpTemplateStore",
    "InMemoryExecutionStore",
    "InMemoryTemplateStore",
    "SQLiteTemplateStore",
    "TemplateStore",
    "get_execution_store",
    "get_template_store",
    "reset_stores",
]
