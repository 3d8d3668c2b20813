from __future__ import annotations

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], None]


class ConnectivityMonitor:
    """Holds the last known online state and tells listeners when it changes."""

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._lock = threading.Lock()
        self._listeners: list[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: ConnectivityListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: ConnectivityListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def set_online(self, online: bool) -> None:
        with self._lock:
            if self._online == online:
                return
            self._online = online
            listeners = list(self._listeners)

        logger.info("Connectivity changed: %s", "online" if online else "offline")
        for listener in listeners:
            listener(online)
