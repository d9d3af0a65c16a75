from __future__ import annotations

import logging
import socket
import threading
from typing import Any, Optional, Set, Tuple, Type

import requests
from requests.adapters import HTTPAdapter
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool
from urllib3.util.retry import Retry


logger = logging.getLogger("transport")


class ConnectionAborter:
    """Tracks the connections of one session so another thread can cut them off.

    Closing a socket does not wake a thread blocked reading from it, so ``abort``
    shuts the sockets down instead. Connections that finish connecting after the
    abort are shut down as soon as they are tracked.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: Set[Any] = set()
        self.aborted = False

    def track(self, conn: Any) -> None:
        with self._lock:
            self._connections.add(conn)
            aborted = self.aborted
        if aborted:
            _shutdown(conn)

    def abort(self) -> None:
        with self._lock:
            self.aborted = True
            connections = list(self._connections)
        for conn in connections:
            _shutdown(conn)


def _shutdown(conn: Any) -> None:
    sock = getattr(conn, "sock", None)
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError as exc:
        logger.debug(f"Socket shutdown failed: {exc}")


def _tracking_pool(base: Type[HTTPConnectionPool], aborter: ConnectionAborter) -> Type[HTTPConnectionPool]:
    class TrackedConnection(base.ConnectionCls):  # type: ignore[name-defined,misc]
        def connect(self) -> None:
            super().connect()
            aborter.track(self)

    class TrackedPool(base):  # type: ignore[valid-type,misc]
        ConnectionCls = TrackedConnection

        def _get_conn(self, timeout: Optional[float] = None) -> Any:
            conn = super()._get_conn(timeout)
            aborter.track(conn)
            return conn

    return TrackedPool


class AbortableAdapter(HTTPAdapter):
    """HTTPAdapter whose in-flight requests can be aborted from another thread."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self.aborter = ConnectionAborter()
        super().__init__(*args, **kwargs)

    def init_poolmanager(self, *args: Any, **kwargs: Any) -> None:
        super().init_poolmanager(*args, **kwargs)
        self.poolmanager.pool_classes_by_scheme = {
            "http": _tracking_pool(HTTPConnectionPool, self.aborter),
            "https": _tracking_pool(HTTPSConnectionPool, self.aborter),
        }

    def abort(self) -> None:
        self.aborter.abort()


def build_session(
    retry: Retry,
    max_redirects: int,
    user_agent: str,
    pool_maxsize: int = 10,
) -> Tuple[requests.Session, AbortableAdapter]:
    session = requests.Session()
    adapter = AbortableAdapter(max_retries=retry, pool_maxsize=pool_maxsize)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    configure_session(session, max_redirects, user_agent)
    return session, adapter


def configure_session(session: Any, max_redirects: int, user_agent: str) -> None:
    session.max_redirects = max_redirects
    session.headers["User-Agent"] = user_agent
