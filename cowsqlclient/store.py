"""Stores holding the list of known cluster nodes."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, List

from .constants import NodeRole


@dataclass
class NodeInfo:
    """Information about a single server."""

    id: int = 0
    address: str = ""
    role: NodeRole = NodeRole.VOTER


class NodeStore(ABC):
    """Source of candidate servers that a client can dial to find the leader."""

    @abstractmethod
    def get(self) -> List[NodeInfo]:
        """Return the list of known servers."""

    @abstractmethod
    def set(self, servers: Iterable[NodeInfo]) -> None:
        """Replace the list of known servers."""


class InmemNodeStore(NodeStore):
    """A node store that keeps its servers in memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._servers: List[NodeInfo] = []

    def get(self) -> List[NodeInfo]:
        with self._lock:
            return list(self._servers)

    def set(self, servers: Iterable[NodeInfo]) -> None:
        with self._lock:
            self._servers = list(servers)