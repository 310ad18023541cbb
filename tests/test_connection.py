import re
import socket
import sqlite3
import struct
import threading

import pytest

from cowsqlclient.codec import decode_db, encode_open
from cowsqlclient.connection import Conn, ExecResult, driver_error
from cowsqlclient.constants import (
    BLOB,
    BOOLEAN,
    FLOAT,
    INTEGER,
    ISO8601,
    NULL,
    REQUEST_EXEC,
    REQUEST_EXEC_SQL,
    REQUEST_FINALIZE,
    REQUEST_INTERRUPT,
    REQUEST_OPEN,
    REQUEST_PREPARE,
    REQUEST_QUERY,
    REQUEST_QUERY_SQL,
    RESPONSE_DB,
    RESPONSE_EMPTY,
    RESPONSE_FAILURE,
    RESPONSE_RESULT,
    RESPONSE_ROWS,
    RESPONSE_STMT,
    TEXT,
    VERSION_ONE,
)
from cowsqlclient.errors import (
    BadConnectionError,
    CowsqlError,
    EndOfRows,
    RequestError,
    SQLiteError,
)
from cowsqlclient.logfunc import Level, collector
from cowsqlclient.message import Message
from cowsqlclient.protocol import Protocol


def _response(mtype, *fields):
    message = Message()
    for put, value in fields:
        put(message, value)
    message.put_header(mtype, 0)
    return message


def _code(value):
    if isinstance(value, int):
        return INTEGER
    if isinstance(value, float):
        return FLOAT
    if isinstance(value, str):
        return TEXT
    if isinstance(value, bytes):
        return BLOB
    return NULL


def _rows_message(columns, rows, last):
    message = Message()
    message.put_uint64(len(columns))
    for name in columns:
        message.put_string(name)
    for row in rows:
        codes = [_code(v) for v in row]
        header = bytearray(-(-len(codes) // 16) * 8)
        for index, code in enumerate(codes):
            header[index // 2] |= code << (4 * (index % 2))
        for byte in header:
            message.put_uint8(byte)
        for code, value in zip(codes, row):
            if code == INTEGER:
                message.put_int64(value)
            elif code == FLOAT:
                message.put_float64(value)
            elif code == TEXT:
                message.put_string(value)
            elif code == BLOB:
                message.put_blob(value)
            else:
                message.put_uint64(0)
    marker = 0xFF if last else 0xEE
    for _ in range(8):
        message.put_uint8(marker)
    message.put_header(RESPONSE_ROWS, 0)
    return message


def _read_value(request, code):
    if code == INTEGER:
        return request.get_int64()
    if code == FLOAT:
        return request.get_float64()
    if code == BOOLEAN:
        return request.get_uint64()
    if code == BLOB:
        return request.get_blob()
    if code in (TEXT, ISO8601):
        return request.get_string()
    request.get_int64()
    return None


def _read_values(request, schema):
    if request.has_been_consumed():
        return []
    count = request.get_uint32() if schema else request.get_uint8()
    codes = [request.get_uint8() for _ in range(count)]
    while request.body()[1] % 8:
        request.get_uint8()
    return [_read_value(request, code) for code in codes]


class FakeServer:
    """A minimal in-process server backed by an in-memory SQLite database."""

    def __init__(self, sock, batch=None):
        self.sock = sock
        self.batch = batch
        self.requests = []
        self.statements = {}
        self._next_stmt = 0
        self.db = sqlite3.connect(
            ":memory:", isolation_level=None, check_same_thread=False
        )
        self._protocol = Protocol(VERSION_ONE, sock)
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def stop(self):
        self._thread.join(5)
        self.sock.close()
        self.db.close()

    def _serve(self):
        request = Message()
        while True:
            try:
                self._protocol.more(request)
            except CowsqlError:
                return
            mtype, schema = request.get_header()
            self.requests.append((mtype, schema))
            try:
                for response in self._handle(request, mtype, schema):
                    self._send(response)
            except OSError:
                return

    def _send(self, response):
        header = struct.pack("<IBBH", response.words, response.mtype, response.schema, 0)
        data, offset = response.body()
        self.sock.sendall(header + data[:offset])

    def _failure(self, err):
        return _response(
            RESPONSE_FAILURE,
            (Message.put_uint64, getattr(err, "sqlite_errorcode", 1)),
            (Message.put_string, str(err)),
        )

    def _execute(self, sql, values):
        try:
            if not values and sql.strip().rstrip(";").count(";"):
                self.db.executescript(sql)
                return _response(
                    RESPONSE_RESULT, (Message.put_uint64, 0), (Message.put_uint64, 0)
                )
            cursor = self.db.execute(sql, values)
        except sqlite3.Error as err:
            return self._failure(err)
        return _response(
            RESPONSE_RESULT,
            (Message.put_uint64, cursor.lastrowid or 0),
            (Message.put_uint64, max(cursor.rowcount, 0)),
        )

    def _query(self, sql, values):
        try:
            cursor = self.db.execute(sql, values)
            rows = cursor.fetchall()
        except sqlite3.Error as err:
            return [self._failure(err)]
        columns = [d[0] for d in cursor.description or ()]
        size = self.batch or max(len(rows), 1)
        chunks = [rows[i : i + size] for i in range(0, len(rows), size)] or [[]]
        return [
            _rows_message(columns, chunk, last=(k == len(chunks) - 1))
            for k, chunk in enumerate(chunks)
        ]

    def _handle(self, request, mtype, schema):
        if mtype == REQUEST_OPEN:
            request.get_string()
            request.get_uint64()
            request.get_string()
            return [
                _response(RESPONSE_DB, (Message.put_uint32, 0), (Message.put_uint32, 0))
            ]
        if mtype == REQUEST_PREPARE:
            db = request.get_uint64()
            sql = request.get_string()
            stmt_id = self._next_stmt
            self._next_stmt += 1
            self.statements[stmt_id] = sql
            return [
                _response(
                    RESPONSE_STMT,
                    (Message.put_uint32, db),
                    (Message.put_uint32, stmt_id),
                    (Message.put_uint64, sql.count("?")),
                )
            ]
        if mtype in (REQUEST_EXEC, REQUEST_QUERY):
            request.get_uint32()
            stmt_id = request.get_uint32()
            values = _read_values(request, schema)
            sql = self.statements[stmt_id]
            if mtype == REQUEST_EXEC:
                return [self._execute(sql, values)]
            return self._query(sql, values)
        if mtype in (REQUEST_EXEC_SQL, REQUEST_QUERY_SQL):
            request.get_uint64()
            sql = request.get_string()
            values = _read_values(request, schema)
            if mtype == REQUEST_EXEC_SQL:
                return [self._execute(sql, values)]
            return self._query(sql, values)
        if mtype == REQUEST_FINALIZE:
            request.get_uint32()
            self.statements.pop(request.get_uint32(), None)
            return [_response(RESPONSE_EMPTY, (Message.put_uint64, 0))]
        if mtype == REQUEST_INTERRUPT:
            request.get_uint64()
            return [_response(RESPONSE_EMPTY, (Message.put_uint64, 0))]
        return [
            _response(
                RESPONSE_FAILURE,
                (Message.put_uint64, 1),
                (Message.put_string, "unsupported"),
            )
        ]


@pytest.fixture
def make_conn():
    created = []

    def factory(batch=None, **options):
        client_sock, server_sock = socket.socketpair()
        server = FakeServer(server_sock, batch=batch)
        protocol = Protocol(VERSION_ONE, client_sock)
        request, response = Message(), Message()
        encode_open(request, "test.db", 0, "volatile")
        protocol.call(request, response, 5.0)
        conn = Conn(protocol, decode_db(response), **options)
        created.append((conn, server))
        return conn, server

    yield factory
    for conn, server in created:
        conn.close()
        server.stop()


# driver_error


@pytest.mark.parametrize(
    "code",
    [10 | (32 << 8), 10 | (33 << 8), 10 | (40 << 8), 10 | (41 << 8)],
)
def test_driver_error_leadership_lost(code):
    log, messages = collector()
    err = RequestError(code, "not leader")
    assert isinstance(driver_error(log, err), BadConnectionError)
    assert messages == [f"DEBUG: leadership lost ({code} - not leader)"]


def test_driver_error_not_found():
    log, messages = collector()
    assert isinstance(driver_error(log, RequestError(12, "gone")), BadConnectionError)
    assert messages == ["DEBUG: not found - potentially after leadership loss (12 - gone)"]


def test_driver_error_zero_code():
    log, messages = collector()
    assert isinstance(driver_error(log, RequestError(0, "odd")), BadConnectionError)
    assert messages == ["WARN: unexpected error code (0 - odd)"]


def test_driver_error_sqlite_error():
    log, messages = collector()
    mapped = driver_error(log, RequestError(2067, "UNIQUE constraint failed: test.n"))
    assert isinstance(mapped, SQLiteError)
    assert mapped.code == 2067
    assert str(mapped) == "UNIQUE constraint failed: test.n"
    assert messages == []


def test_driver_error_wrapped_request_error():
    log, _ = collector()
    try:
        try:
            raise RequestError(1, "bind parameters")
        except RequestError as inner:
            raise CowsqlError("call exec") from inner
    except CowsqlError as outer:
        mapped = driver_error(log, outer)
    assert isinstance(mapped, SQLiteError)
    assert mapped.message == "bind parameters"


def test_driver_error_network_error():
    log, messages = collector()
    err = CowsqlError("call query: receive")
    err.__cause__ = ConnectionResetError(104, "reset")
    assert isinstance(driver_error(log, err), BadConnectionError)
    assert messages[0].startswith("DEBUG: network connection lost:")


def test_driver_error_eof():
    log, messages = collector()
    err = CowsqlError("call query: receive: EOF")
    err.__cause__ = EOFError("EOF")
    assert isinstance(driver_error(log, err), BadConnectionError)
    assert messages == ["DEBUG: EOF detected: call query: receive: EOF"]


def test_driver_error_other_is_unchanged():
    log, messages = collector()
    err = CowsqlError("boom")
    assert driver_error(log, err) is err
    assert messages == []


# Connection behaviour against an in-process server.


def test_prepare_num_input(make_conn):
    conn, server = make_conn()
    stmt = conn.prepare("CREATE TABLE test (n INT)")
    assert stmt.num_input() == 0
    assert (REQUEST_PREPARE, 0) in server.requests


def test_conn_exec(make_conn):
    conn, _ = make_conn()
    conn.begin()
    conn.exec("CREATE TABLE test (n INT)")
    result = conn.exec("INSERT INTO test(n) VALUES(1)")
    assert result == ExecResult(last_insert_id=1, rows_affected=1)


def test_conn_query_row(make_conn):
    conn, _ = make_conn()
    conn.begin()
    conn.exec("CREATE TABLE test (n INT)")
    conn.exec("INSERT INTO test(n) VALUES(1)")
    conn.exec("INSERT INTO test(n) VALUES(1)")
    rows = conn.query("SELECT n FROM test")
    assert rows.next() == [1]
    rows.close()
    assert conn.query("SELECT count(*) FROM test").next() == [2]


def test_conn_query_blob(make_conn):
    conn, _ = make_conn()
    conn.begin()
    conn.exec("CREATE TABLE test (data BLOB)")
    conn.exec("INSERT INTO test(data) VALUES(?)", [b"abc"])
    rows = conn.query("SELECT data FROM test")
    assert rows.columns() == ["data"]
    assert rows.next() == [b"abc"]


def test_stmt_exec(make_conn):
    conn, server = make_conn()
    stmt = conn.prepare("CREATE TABLE test (n INT)")
    conn.begin()
    stmt.exec()
    stmt.close()
    assert (REQUEST_FINALIZE, 0) in server.requests

    stmt = conn.prepare("INSERT INTO test(n) VALUES(?)")
    assert stmt.num_input() == 1
    result = stmt.exec([1])
    assert result.last_insert_id == 1
    assert result.rows_affected == 1
    stmt.close()


def test_stmt_exec_many_params(make_conn):
    conn, server = make_conn()
    conn.prepare("CREATE TABLE test (n INT)").exec()
    stmt = conn.prepare("INSERT INTO test(n) VALUES " + "(?), " * 299 + " (?)")
    assert stmt.num_input() == 300
    result = stmt.exec([1] * 300)
    assert result.rows_affected == 300
    assert (REQUEST_EXEC, 1) in server.requests
    stmt.close()


def test_stmt_query(make_conn):
    conn, _ = make_conn()
    stmt = conn.prepare("CREATE TABLE test (n INT)")
    conn.begin()
    stmt.exec()
    stmt.close()
    stmt = conn.prepare("INSERT INTO test(n) VALUES(-123)")
    stmt.exec()
    stmt.close()

    stmt = conn.prepare("SELECT n FROM test")
    rows = stmt.query()
    assert rows.columns() == ["n"]
    assert rows.next() == [-123]
    with pytest.raises(EndOfRows):
        rows.next()
    stmt.close()


def test_stmt_query_many_params(make_conn):
    conn, server = make_conn()
    conn.prepare("CREATE TABLE test (n INT)").exec()
    stmt = conn.prepare("SELECT n FROM test WHERE n IN (" + "?, " * 299 + " ?)")
    rows = stmt.query([1] * 300)
    assert list(rows) == []
    assert (REQUEST_QUERY, 1) in server.requests


def test_conn_query_params(make_conn):
    conn, _ = make_conn()
    conn.begin()
    conn.exec("CREATE TABLE test (n INT, t TEXT)")
    conn.exec(
        """
INSERT INTO test (n,t) VALUES (1,'a');
INSERT INTO test (n,t) VALUES (2,'a');
INSERT INTO test (n,t) VALUES (2,'b');
INSERT INTO test (n,t) VALUES (3,'b');
"""
    )
    rows = conn.query("SELECT n, t FROM test WHERE n > ? AND t = ?", [1, "a"])
    assert rows.columns()[0] == "n"
    assert rows.next() == [2, "a"]
    with pytest.raises(EndOfRows):
        rows.next()


def test_conn_query_many_params(make_conn):
    conn, server = make_conn()
    conn.exec("CREATE TABLE test (n INT)")
    rows = conn.query("SELECT n FROM test WHERE n IN (" + "?, " * 299 + " ?)", [1] * 300)
    assert list(rows) == []
    assert (REQUEST_QUERY_SQL, 1) in server.requests


def test_conn_exec_many_params(make_conn):
    conn, server = make_conn()
    conn.exec("CREATE TABLE test (n INT)")
    result = conn.exec("INSERT INTO test(n) VALUES " + "(?), " * 299 + " (?)", [1] * 300)
    assert result.rows_affected == 300
    assert (REQUEST_EXEC_SQL, 1) in server.requests


def test_column_types_exists(make_conn):
    conn, _ = make_conn()
    conn.exec("CREATE TABLE test (n INT)")
    conn.exec("INSERT INTO test(n) VALUES(-123)")
    rows = conn.prepare("SELECT n FROM test").query()
    assert rows.column_type_database_type_name(0) == "INTEGER"


def test_column_types_end(make_conn):
    conn, _ = make_conn()
    conn.exec("CREATE TABLE test (n INT)")
    conn.exec("INSERT INTO test(n) VALUES(-123)")
    rows = conn.prepare("SELECT n FROM test").query()
    assert rows.column_type_database_type_name(0) == "INTEGER"
    assert rows.next() == [-123]
    with pytest.raises(EndOfRows):
        rows.next()
    assert rows.column_type_database_type_name(0) == "INTEGER"


def test_column_types_empty_result_logs_warning(make_conn):
    log, messages = collector()
    conn, _ = make_conn(log=log)
    conn.exec("CREATE TABLE test (n INT)")
    rows = conn.query("SELECT n FROM test")
    assert rows.column_type_database_type_name(0) == ""
    assert messages[-1].startswith("WARN: row (")


def test_zero_columns(make_conn):
    conn, _ = make_conn()
    rows = conn.query("CREATE TABLE foo (bar INTEGER)", [])
    with pytest.raises(EndOfRows):
        rows.next()


def test_constraint_error(make_conn):
    conn, _ = make_conn()
    conn.exec("CREATE TABLE test (n INT, UNIQUE (n))")
    conn.exec("INSERT INTO test (n) VALUES (1)")
    with pytest.raises(SQLiteError) as info:
        conn.exec("INSERT INTO test (n) VALUES (1)")
    assert info.value.message == "UNIQUE constraint failed: test.n"


def test_rows_across_several_responses(make_conn):
    conn, _ = make_conn(batch=2)
    conn.exec("CREATE TABLE test (n INT)")
    for n in range(5):
        conn.exec("INSERT INTO test(n) VALUES(?)", [n])
    rows = conn.query("SELECT n FROM test ORDER BY n")
    assert list(rows) == [[0], [1], [2], [3], [4]]


def test_close_with_pending_rows_interrupts(make_conn):
    conn, server = make_conn(batch=1)
    conn.exec("CREATE TABLE test (n INT)")
    for n in range(3):
        conn.exec("INSERT INTO test(n) VALUES(?)", [n])
    rows = conn.query("SELECT n FROM test ORDER BY n")
    assert rows.next() == [0]
    rows.close()
    assert server.requests[-1] == (REQUEST_INTERRUPT, 0)
    assert conn.query("SELECT count(*) FROM test").next() == [3]


def test_close_after_full_read_does_not_interrupt(make_conn):
    conn, server = make_conn()
    conn.exec("CREATE TABLE test (n INT)")
    conn.exec("INSERT INTO test(n) VALUES(7)")
    rows = conn.query("SELECT n FROM test")
    assert list(rows) == [[7]]
    rows.close()
    assert (REQUEST_INTERRUPT, 0) not in server.requests


def test_transaction_rollback(make_conn):
    conn, _ = make_conn()
    conn.exec("CREATE TABLE test (n INT)")
    tx = conn.begin()
    conn.exec("INSERT INTO test(n) VALUES(1)")
    tx.rollback()
    assert conn.query("SELECT count(*) FROM test").next() == [0]


def test_transaction_commit(make_conn):
    conn, _ = make_conn()
    conn.exec("CREATE TABLE test (n INT)")
    with conn.begin():
        conn.exec("INSERT INTO test(n) VALUES(1)")
    assert conn.query("SELECT count(*) FROM test").next() == [1]


def test_tracing_logs_requests(make_conn):
    log, messages = collector()
    conn, _ = make_conn(log=log, tracing=Level.INFO)
    conn.exec("CREATE TABLE test (n INT)")
    result = conn.exec("INSERT INTO test(n) VALUES(1)")
    assert result == ExecResult(last_insert_id=1, rows_affected=1)
    assert re.fullmatch(
        r"INFO: \d+\.\d{3}s request exec: 'INSERT INTO test\(n\) VALUES\(1\)'",
        messages[-1],
    )


def test_lost_connection_is_bad_connection(make_conn):
    conn, server = make_conn()
    server.sock.shutdown(socket.SHUT_RDWR)
    with pytest.raises(BadConnectionError):
        conn.exec("SELECT 1")