"""Exceptions raised by the client."""

from __future__ import annotations


class CowsqlError(Exception):
    """Base class of all client errors."""


class NoAvailableLeaderError(CowsqlError):
    """No leader server could be found in the cluster."""

    def __init__(self, message: str = "no available cowsql leader server found"):
        super().__init__(message)


class BadProtocolError(CowsqlError):
    """The server does not speak the requested protocol version."""

    def __init__(self, message: str = "bad protocol"):
        super().__init__(message)


class RequestError(CowsqlError):
    """A request failed on the server side."""

    def __init__(self, code: int, description: str):
        super().__init__(code, description)
        self.code = code
        self.description = description

    def __str__(self) -> str:
        return f"{self.description} ({self.code})"


class SQLiteError(CowsqlError):
    """A SQLite error reported by the database."""

    def __init__(self, code: int, message: str):
        super().__init__(code, message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return self.message


class RowsPart(CowsqlError):
    """The current batch of a multi-response result set is done."""

    def __init__(self, message: str = "not all rows were returned in this response"):
        super().__init__(message)


class EndOfRows(CowsqlError):
    """There are no more rows in the result set."""

    def __init__(self, message: str = "no more rows"):
        super().__init__(message)


class ShortMessageError(CowsqlError):
    """An attempt was made to read past the end of a message."""


class BadConnectionError(CowsqlError):
    """The connection is unusable and should be discarded."""

    def __init__(self, message: str = "driver: bad connection"):
        super().__init__(message)