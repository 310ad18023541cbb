"""Driver entry points: locating the leader and opening database connections."""

from __future__ import annotations

import time
from typing import Optional

from .codec import decode_db, encode_open
from .connection import Conn
from .connector import Config, DialFunc
from .connector import Connector as _LeaderConnector
from .errors import CowsqlError, NoAvailableLeaderError, SQLiteError
from .logfunc import Level, LogFunc
from .message import Message
from .protocol import dial as _default_dial
from .store import NodeStore

Error = SQLiteError
"""Errors reported by the database."""


def _discard(level, fmt, *args) -> None:
    pass


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return max(deadline - time.monotonic(), 0.0)


class Driver:
    """Performs queries against a cluster whose nodes are listed in a store.

    Durations are in seconds; zero selects the default.
    """

    def __init__(
        self,
        store: NodeStore,
        *,
        log: Optional[LogFunc] = None,
        dial: Optional[DialFunc] = None,
        attempt_timeout: float = 0.0,
        connection_timeout: float = 0.0,
        context_timeout: float = 0.0,
        connection_backoff_factor: float = 0.0,
        connection_backoff_cap: float = 0.0,
        retry_limit: int = 0,
        tracing: Level = Level.NONE,
    ) -> None:
        self.store = store
        self.log: LogFunc = log or _discard
        self.connection_timeout = connection_timeout
        self.context_timeout = context_timeout
        self.tracing = tracing
        self.client_config = Config(
            dial=dial or _default_dial,
            attempt_timeout=attempt_timeout,
            backoff_factor=connection_backoff_factor,
            backoff_cap=connection_backoff_cap,
            retry_limit=retry_limit,
        )

    def open_connector(self, name: str) -> "Connector":
        """Return a connector opening the database with the given name."""
        return Connector(name, self)

    def open(self, uri: str) -> Conn:
        """Open a connection to the named database on the leader node."""
        return self.open_connector(uri).connect()


class Connector:
    """A driver in a fixed configuration, able to create equivalent connections."""

    def __init__(self, uri: str, driver: Driver) -> None:
        self.uri = uri
        self._driver = driver

    def driver(self) -> Driver:
        """Return the driver this connector belongs to."""
        return self._driver

    def connect(self, timeout: Optional[float] = None) -> Conn:
        """Connect to the leader and open the database.

        Raises NoAvailableLeaderError when no leader can be reached and
        CowsqlError when the database cannot be opened.
        """
        drv = self._driver
        if drv.connection_timeout:
            timeout = (
                drv.connection_timeout
                if timeout is None
                else min(timeout, drv.connection_timeout)
            )
        deadline = None if timeout is None else time.monotonic() + timeout

        leader = _LeaderConnector(0, drv.store, drv.client_config, drv.log)
        try:
            protocol = leader.connect(timeout)
        except NoAvailableLeaderError as err:
            raise NoAvailableLeaderError(
                f"failed to create cowsql connection: {err}"
            ) from err

        request, response = Message(), Message()
        encode_open(request, self.uri, 0, "volatile")
        try:
            protocol.call(request, response, _remaining(deadline))
            db_id = decode_db(response)
        except CowsqlError as err:
            protocol.close()
            raise CowsqlError(f"failed to open database: {err}") from err
        except BaseException:
            protocol.close()
            raise

        return Conn(protocol, db_id, drv.log, drv.context_timeout, drv.tracing)