# cowsqlclient

A pure-Python client for cowsql, the distributed SQLite database replicated
with Raft. It speaks the cowsql wire protocol, finds the current leader of a
cluster and runs SQL statements on it. It uses only the standard library.

## Connecting

A `NodeStore` holds the candidate nodes. The connector sorts them by role,
asks each one who the leader is, follows a reported leader hint, and backs
off exponentially between rounds.

```python
from cowsqlclient.store import InmemNodeStore, NodeInfo
from cowsqlclient.driver import Driver

store = InmemNodeStore()
store.set([NodeInfo(id=1, address="127.0.0.1:9001"),
           NodeInfo(id=2, address="127.0.0.1:9002")])

driver = Driver(store, connection_timeout=5.0)
conn = driver.open("test.db")
```

An address that starts with `@` is an abstract Unix socket (Linux). Any other
address is a TCP `host:port`.

`Driver` takes keyword options, with durations in seconds and zero meaning
the default: `log`, `dial` (a callable `dial(address, timeout)` returning a
connected socket), `attempt_timeout` (15 s), `connection_timeout`,
`context_timeout` (used by `Conn.begin()` when no timeout is given),
`connection_backoff_factor` (0.1 s), `connection_backoff_cap` (1 s),
`retry_limit` (0 means unlimited) and `tracing` (a `Level` at which each
statement is logged with its duration).

With `retry_limit` zero and no timeout, connecting retries until a leader is
found. Pass `connection_timeout`, a `retry_limit`, or call
`driver.open_connector(name).connect(timeout)` to bound it.

## Running SQL

```python
with conn.begin():
    conn.exec("CREATE TABLE test (n INT, s TEXT)")
    result = conn.exec("INSERT INTO test (n, s) VALUES (?, ?)", [123, "hello"])
    print(result.last_insert_id, result.rows_affected)

with conn.query("SELECT n, s FROM test") as rows:
    print(rows.columns())
    print(rows.column_type_database_type_name(0))
    for row in rows:
        print(row)

with conn.prepare("INSERT INTO test (n) VALUES (?)") as stmt:
    print(stmt.num_input())
    stmt.exec([456])

conn.close()
```

Leaving a `Tx` block commits, or rolls back if an exception was raised;
`commit()` and `rollback()` can also be called directly. `ResultRows.next()`
returns one row as a list and raises `EndOfRows` at the end; iterating stops
there instead. Closing a result set that still has rows pending on the server
sends an interrupt request.

Parameters may be `int`, `float`, `bool`, `bytes`, `str`, `None` or
`datetime.datetime`. Timestamps are sent in ISO 8601 form (naive values as
UTC) and come back as timezone-aware `datetime` objects. More than 255
parameters are sent with the 32-bit count encoding.

## Errors

All exceptions derive from `cowsqlclient.errors.CowsqlError`. Database
failures raise `SQLiteError`, carrying the SQLite result `code` and a
`message` (`cowsqlclient.driver.Error` is the same class). A lost connection,
lost leadership or a "not found" reply raises `BadConnectionError`: open a new
connection and retry. `NoAvailableLeaderError` means no leader could be
reached within the retries or timeout.

## Logging

Anything that logs takes a callable `log(level, format, *args)` using
`%`-style formatting. `cowsqlclient.logfunc.Level` lists the levels.
`stdout()` returns a function that prints each message, and `collector()`
returns a function together with the list it appends messages to.

## Lower-level access

- `cowsqlclient.message`: the `Message` buffer, `Rows`, `Files` and `Result`.
- `cowsqlclient.codec`: `encode_*` functions for every request type and
  `decode_*` functions for every response type; a failure response raises
  `RequestError`.
- `cowsqlclient.protocol`: `dial`, `handshake` and `Protocol` for single
  request/response calls.
- `cowsqlclient.connector`: `Connector` and `Config` for finding the leader,
  and `backoff_delays` for the retry schedule.

## What it does not do

This package is a client only. It does not run a cowsql node, has no
command-line shell, and offers no high-level API for cluster administration
(adding, removing or describing nodes, dumps, leadership transfer); for those
only the raw request encoders and response decoders are provided. It does not
send heartbeats.