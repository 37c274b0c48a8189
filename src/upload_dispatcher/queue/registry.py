"""
Выбор бэкенда очереди по URL хранилища.

Назначение:
- явный реестр scheme -> фабрика (без глобальной регистрации при импорте)
- разбор URL вида mem://collection/<key_field>
- неизвестная схема -> StoreConfigError (фатально на старте)

Пример:
    registry = default_registry()
    queue = open_task_queue("sqlite:///tasks.db?key_field=filename", registry=registry)
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from upload_dispatcher.common.errors import StoreConfigError

from .base import TaskQueue

QueueFactory = Callable[[str, "OpenOptions"], TaskQueue]


@dataclass(frozen=True)
class OpenOptions:
    localfile: str | None = None


def url_scheme(url: str) -> str:
    """
    Базовая схема URL: "postgresql+psycopg" -> "postgresql".
    """
    scheme = urlsplit(url or "").scheme.lower()
    return scheme.split("+", 1)[0]


@dataclass
class StoreRegistry:
    _factories: dict[str, QueueFactory] = field(default_factory=dict)

    def register(self, scheme: str, factory: QueueFactory) -> None:
        key = (scheme or "").strip().lower()
        if not key:
            raise StoreConfigError("Пустая схема хранилища")
        self._factories[key] = factory

    def schemes(self) -> list[str]:
        return sorted(self._factories)

    def open(self, url: str, options: OpenOptions | None = None) -> TaskQueue:
        scheme = url_scheme(url)
        factory = self._factories.get(scheme)
        if factory is None:
            raise StoreConfigError(
                "Неизвестная схема хранилища",
                {"scheme": scheme or None, "supported": self.schemes()},
            )
        return factory(url, options or OpenOptions())


# =============================================================================
# ФАБРИКИ
# =============================================================================
def _open_memory(url: str, options: OpenOptions) -> TaskQueue:
    from .memory import MemoryTaskQueue

    parts = urlsplit(url)
    segments = [p for p in parts.path.split("/") if p]
    key_field = segments[-1] if segments else "id"
    return MemoryTaskQueue(key_field=key_field, localfile=options.localfile)


def _open_redis(url: str, options: OpenOptions) -> TaskQueue:
    from .redis import RedisTaskQueue

    return RedisTaskQueue.from_url(url)


def _open_sql(url: str, options: OpenOptions) -> TaskQueue:
    from .sql import SqlTaskQueue

    return SqlTaskQueue.from_url(url)


def default_registry() -> StoreRegistry:
    registry = StoreRegistry()
    registry.register("mem", _open_memory)
    registry.register("redis", _open_redis)
    registry.register("rediss", _open_redis)
    registry.register("sqlite", _open_sql)
    registry.register("postgresql", _open_sql)
    registry.register("mysql", _open_sql)
    return registry


def open_task_queue(
    url: str,
    *,
    localfile: str | None = None,
    registry: StoreRegistry | None = None,
) -> TaskQueue:
    reg = registry or default_registry()
    return reg.open(url, OpenOptions(localfile=localfile))
