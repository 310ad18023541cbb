"""Database connections, prepared statements, transactions and result sets."""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence

from .codec import (
    decode_empty,
    decode_result,
    decode_rows,
    decode_stmt,
    encode_exec_sql_v0,
    encode_exec_sql_v1,
    encode_exec_v0,
    encode_exec_v1,
    encode_finalize,
    encode_prepare,
    encode_query_sql_v0,
    encode_query_sql_v1,
    encode_query_v0,
    encode_query_v1,
)
from .errors import (
    BadConnectionError,
    CowsqlError,
    EndOfRows,
    RequestError,
    RowsPart,
    SQLiteError,
)
from .logfunc import Level, LogFunc
from .message import Message, Result, Rows
from .protocol import Protocol

# Error codes. Values mostly overlap with native SQLite codes.
ERR_BUSY = 5
ERR_BUSY_RECOVERY = 5 | (1 << 8)
ERR_BUSY_SNAPSHOT = 5 | (2 << 8)
_ERR_IOERR = 10
_ERR_IOERR_NOT_LEADER = _ERR_IOERR | (40 << 8)
_ERR_IOERR_LEADERSHIP_LOST = _ERR_IOERR | (41 << 8)
_ERR_NOT_FOUND = 12
# Legacy codes used by older servers.
_ERR_IOERR_NOT_LEADER_LEGACY = _ERR_IOERR | (32 << 8)
_ERR_IOERR_LEADERSHIP_LOST_LEGACY = _ERR_IOERR | (33 << 8)

_LEADERSHIP_LOST = frozenset(
    {
        _ERR_IOERR_NOT_LEADER_LEGACY,
        _ERR_IOERR_LEADERSHIP_LOST_LEGACY,
        _ERR_IOERR_NOT_LEADER,
        _ERR_IOERR_LEADERSHIP_LOST,
    }
)

_MAX_UINT8 = 0xFF
_MAX_UINT32 = 0xFFFFFFFF


def _discard(level, fmt, *args) -> None:
    pass


def _int64(value: int) -> int:
    return value - (1 << 64) if value >= (1 << 63) else value


def _chain(err: BaseException) -> Iterator[BaseException]:
    current: Optional[BaseException] = err
    while current is not None:
        yield current
        current = current.__cause__


def _find(err: BaseException, kind):
    return next((e for e in _chain(err) if isinstance(e, kind)), None)


def driver_error(log: LogFunc, err: BaseException) -> BaseException:
    """Translate a low-level error into the one the caller should see.

    Lost connections and lost leadership become BadConnectionError, server
    failures become SQLiteError; anything else is returned unchanged.
    """
    net = _find(err, OSError)
    if net is not None:
        log(Level.DEBUG, "network connection lost: %s", str(net))
        return BadConnectionError()

    request = _find(err, RequestError)
    if request is not None:
        code, description = request.code, request.description
        if code in _LEADERSHIP_LOST:
            log(Level.DEBUG, "leadership lost (%d - %s)", code, description)
            return BadConnectionError()
        if code == _ERR_NOT_FOUND:
            log(
                Level.DEBUG,
                "not found - potentially after leadership loss (%d - %s)",
                code,
                description,
            )
            return BadConnectionError()
        if code == 0:
            # The server sometimes reports success codes on failure; treat
            # the connection as bad so the client retries.
            log(Level.WARN, "unexpected error code (%d - %s)", code, description)
            return BadConnectionError()
        return SQLiteError(code, description)

    if _find(err, EOFError) is not None:
        log(Level.DEBUG, "EOF detected: %s", str(err))
        return BadConnectionError()

    return err


@contextmanager
def _driver_errors(log: LogFunc) -> Iterator[None]:
    try:
        yield
    except (CowsqlError, OSError, EOFError) as err:
        mapped = driver_error(log, err)
        if mapped is err:
            raise
        raise mapped from err


@contextmanager
def _traced(log: LogFunc, tracing: Level, kind: str, sql: str) -> Iterator[None]:
    if tracing == Level.NONE:
        yield
        return
    start = time.monotonic()
    try:
        yield
    finally:
        log(tracing, "%.3fs request %s: %r", time.monotonic() - start, kind, sql)


def _wide(log: LogFunc, args: list) -> bool:
    """Return whether the parameters need the 32-bit count encoding."""
    if len(args) > _MAX_UINT32:
        raise driver_error(log, CowsqlError(f"too many parameters ({len(args)})"))
    return len(args) > _MAX_UINT8


@dataclass(frozen=True)
class ExecResult:
    """Outcome of a statement that does not return rows."""

    last_insert_id: int
    rows_affected: int

    @classmethod
    def _from(cls, result: Result) -> "ExecResult":
        return cls(_int64(result.last_insert_id), _int64(result.rows_affected))


class ResultRows:
    """Iterator over the rows of an executed query."""

    def __init__(
        self,
        protocol: Protocol,
        request: Message,
        response: Message,
        rows: Rows,
        log: Optional[LogFunc] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._protocol = protocol
        self._request = request
        self._response = response
        self._rows = rows
        self._log = log or _discard
        self._timeout = timeout
        self._consumed = False
        self._types: Optional[List[str]] = None

    def __enter__(self) -> "ResultRows":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def columns(self) -> List[str]:
        """Return the names of the columns."""
        return list(self._rows.columns)

    def next(self) -> list:
        """Return the next row; raise EndOfRows when there are no more."""
        while True:
            try:
                return self._rows.next()
            except EndOfRows:
                self._consumed = True
                raise
            except RowsPart:
                pass
            self._fetch_more()

    def _fetch_more(self) -> None:
        try:
            self._rows.close()
        except CowsqlError:
            pass
        with _driver_errors(self._log):
            self._protocol.more(self._response)
            self._rows = decode_rows(self._response)

    def __iter__(self) -> Iterator[list]:
        while True:
            try:
                row = self.next()
            except EndOfRows:
                return
            yield row

    def close(self) -> None:
        """Close the result set, interrupting the query if rows are pending."""
        fully_read = self._response.has_been_consumed()
        try:
            pending = self._rows.close()
        except CowsqlError:
            pending = True
        if self._consumed:
            return
        if not pending and not fully_read:
            # Single-response result set that ended with its EOF marker.
            return
        with _driver_errors(self._log):
            self._protocol.interrupt(self._request, self._response, self._timeout)

    def column_type_database_type_name(self, i: int) -> str:
        """Return the database type name of column ``i``, or "" if unknown."""
        if self._types is None:
            error: Optional[Exception] = None
            try:
                types = self._rows.column_types()
            except CowsqlError as err:
                types, error = [], err
            if i >= len(types):
                self._log(
                    Level.WARN,
                    "row (%s) error returning column #%d type: %s",
                    hex(id(self)),
                    i,
                    str(error) if error is not None else "no such column",
                )
                return ""
            if error is None:
                self._types = types
            return types[i]
        return self._types[i]


class Stmt:
    """A prepared statement bound to a connection."""

    def __init__(
        self,
        protocol: Protocol,
        request: Message,
        response: Message,
        db: int,
        id: int,
        params: int,
        log: Optional[LogFunc] = None,
        sql: str = "",
        tracing: Level = Level.NONE,
    ) -> None:
        self._protocol = protocol
        self._request = request
        self._response = response
        self.db = db
        self.id = id
        self._params = params
        self._log = log or _discard
        self.sql = sql
        self._tracing = tracing

    def __enter__(self) -> "Stmt":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def num_input(self) -> int:
        """Return the number of placeholder parameters."""
        return int(self._params)

    def _call(self, timeout: Optional[float]) -> None:
        with _driver_errors(self._log):
            with _traced(self._log, self._tracing, "prepared", self.sql):
                self._protocol.call(self._request, self._response, timeout)

    def exec(
        self, args: Optional[Sequence] = None, timeout: Optional[float] = None
    ) -> ExecResult:
        """Execute the statement, which returns no rows."""
        values = list(args or ())
        encode = encode_exec_v1 if _wide(self._log, values) else encode_exec_v0
        encode(self._request, self.db, self.id, values)
        self._call(timeout)
        with _driver_errors(self._log):
            result = decode_result(self._response)
        return ExecResult._from(result)

    def query(
        self, args: Optional[Sequence] = None, timeout: Optional[float] = None
    ) -> ResultRows:
        """Execute the statement and return its rows."""
        values = list(args or ())
        encode = encode_query_v1 if _wide(self._log, values) else encode_query_v0
        encode(self._request, self.db, self.id, values)
        self._call(timeout)
        with _driver_errors(self._log):
            rows = decode_rows(self._response)
        return ResultRows(
            self._protocol, self._request, self._response, rows, self._log, timeout
        )

    def close(self) -> None:
        """Finalize the statement on the server."""
        encode_finalize(self._request, self.db, self.id)
        with _driver_errors(self._log):
            self._protocol.call(self._request, self._response)
            decode_empty(self._response)


class Tx:
    """A transaction on a connection."""

    def __init__(self, conn: "Conn") -> None:
        self._conn = conn

    def __enter__(self) -> "Tx":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.commit()
        else:
            self.rollback()

    def commit(self) -> None:
        """Commit the transaction."""
        self._conn.exec("COMMIT")

    def rollback(self) -> None:
        """Roll the transaction back."""
        self._conn.exec("ROLLBACK")


class Conn:
    """A connection to a database on the leader node."""

    def __init__(
        self,
        protocol: Protocol,
        id: int,
        log: Optional[LogFunc] = None,
        context_timeout: float = 0.0,
        tracing: Level = Level.NONE,
    ) -> None:
        self._protocol = protocol
        self.id = id
        self._log = log or _discard
        self._context_timeout = context_timeout
        self._tracing = tracing
        self._request = Message()
        self._response = Message()

    def __enter__(self) -> "Conn":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _call(self, kind: str, sql: str, timeout: Optional[float]) -> None:
        with _driver_errors(self._log):
            with _traced(self._log, self._tracing, kind, sql):
                self._protocol.call(self._request, self._response, timeout)

    def prepare(self, query: str, timeout: Optional[float] = None) -> Stmt:
        """Prepare a statement bound to this connection."""
        encode_prepare(self._request, self.id, query)
        self._call("prepared", query, timeout)
        with _driver_errors(self._log):
            db, stmt_id, params = decode_stmt(self._response)
        return Stmt(
            self._protocol,
            self._request,
            self._response,
            db,
            stmt_id,
            params,
            self._log,
            query if self._tracing != Level.NONE else "",
            self._tracing,
        )

    def exec(
        self,
        query: str,
        args: Optional[Sequence] = None,
        timeout: Optional[float] = None,
    ) -> ExecResult:
        """Execute SQL that returns no rows."""
        values = list(args or ())
        encode = encode_exec_sql_v1 if _wide(self._log, values) else encode_exec_sql_v0
        encode(self._request, self.id, query, values)
        self._call("exec", query, timeout)
        with _driver_errors(self._log):
            result = decode_result(self._response)
        return ExecResult._from(result)

    def query(
        self,
        query: str,
        args: Optional[Sequence] = None,
        timeout: Optional[float] = None,
    ) -> ResultRows:
        """Execute SQL and return its rows."""
        values = list(args or ())
        encode = (
            encode_query_sql_v1 if _wide(self._log, values) else encode_query_sql_v0
        )
        encode(self._request, self.id, query, values)
        self._call("query", query, timeout)
        with _driver_errors(self._log):
            rows = decode_rows(self._response)
        return ResultRows(
            self._protocol, self._request, self._response, rows, self._log, timeout
        )

    def begin(self, timeout: Optional[float] = None) -> Tx:
        """Start a transaction."""
        if timeout is None and self._context_timeout > 0:
            timeout = self._context_timeout
        self.exec("BEGIN", None, timeout)
        return Tx(self)

    def close(self) -> None:
        """Close the underlying network connection."""
        self._protocol.close()