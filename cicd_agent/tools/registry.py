"""工具注册表。

进程启动时由 catalog 一次性注册全部工具并 freeze，之后只读：
- 多个会话可并发 resolve / list_descriptors，无需加锁。
- freeze 之后的 register 会抛出 RegistryFrozenError。
"""

import threading
from types import MappingProxyType
from typing import Dict, Mapping, Tuple

from cicd_agent.domain.exceptions import DuplicateToolError, RegistryFrozenError, UnknownToolError
from cicd_agent.infrastructure.logging.logger import logger
from .definitions import ToolDef


class ToolRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tools: Dict[str, ToolDef] = {}
        self._view: Mapping[str, ToolDef] = MappingProxyType({})
        self._descriptors: Tuple[ToolDef, ...] = ()
        self._frozen = False

    def register(self, descriptor: ToolDef) -> None:
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(descriptor.name)
            if descriptor.name in self._tools:
                raise DuplicateToolError(descriptor.name)
            self._tools[descriptor.name] = descriptor
            self._publish()
        logger.info("Registered tool", extra={"extra": {"tool": descriptor.name}})

    def freeze(self) -> "ToolRegistry":
        with self._lock:
            self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def resolve(self, name: str) -> ToolDef:
        descriptor = self._view.get(name)
        if descriptor is None:
            raise UnknownToolError(name)
        return descriptor

    def list_descriptors(self) -> Tuple[ToolDef, ...]:
        return self._descriptors

    def names(self) -> Tuple[str, ...]:
        return tuple(d.name for d in self._descriptors)

    def __contains__(self, name: object) -> bool:
        return name in self._view

    def __len__(self) -> int:
        return len(self._descriptors)

    def _publish(self) -> None:
        # 每次注册都发布新的只读快照，读者永远看到一致的视图
        snapshot = dict(self._tools)
        self._view = MappingProxyType(snapshot)
        self._descriptors = tuple(snapshot.values())
