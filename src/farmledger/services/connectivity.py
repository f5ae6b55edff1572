from __future__ import annotations

import logging
import threading
from typing import Callable

log = logging.getLogger("farmledger.sync")

Listener = Callable[[bool], None]


class ConnectivityMonitor:
    """Online flag plus listeners that fire on offline/online transitions only."""

    def __init__(self, online: bool = True):
        self._online = bool(online)
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    @property
    def online(self) -> bool:
        return self._online

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def set_online(self, online: bool) -> bool:
        """Returns True when the flag actually changed."""
        online = bool(online)
        with self._lock:
            if online == self._online:
                return False
            self._online = online
            listeners = list(self._listeners)
        log.info("connectivity_changed online=%s", online)
        for listener in listeners:
            listener(online)
        return True
