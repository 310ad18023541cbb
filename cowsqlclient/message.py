"""Encoding and decoding of protocol messages."""

from __future__ import annotations

import re
import struct
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterator, List, Optional, Sequence, Tuple

from .constants import (
    BLOB,
    BOOLEAN,
    FLOAT,
    INTEGER,
    ISO8601,
    NULL,
    TEXT,
    UNIX_TIME,
    NodeRole,
)
from .errors import CowsqlError, EndOfRows, RowsPart, ShortMessageError
from .store import NodeInfo

WORD_SIZE = 8
HEADER_SIZE = WORD_SIZE

_ROWS_PART_MARKER = 0xEE
_ROWS_EOF_MARKER = 0xFF
_MAX_UINT8 = 0xFF
_MAX_UINT32 = 0xFFFFFFFF

_HEADER = struct.Struct("<IBBH")
_U8 = struct.Struct("<B")
_U16 = struct.Struct("<H")
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")
_I64 = struct.Struct("<q")
_F64 = struct.Struct("<d")

_ISO8601_RE = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})"
    r"(?:[ T](\d{2}):(\d{2})(?::(\d{2})(?:\.(\d{1,9}))?([+-]\d{2}:\d{2})?)?)?"
)

_TYPE_NAMES = {
    INTEGER: "INTEGER",
    FLOAT: "FLOAT",
    BLOB: "BLOB",
    TEXT: "TEXT",
    NULL: "NULL",
    UNIX_TIME: "TIME",
    ISO8601: "TIME",
    BOOLEAN: "BOOL",
}


def _padding(size: int) -> int:
    return -size % WORD_SIZE


def _format_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d} "
        f"{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
    )
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    offset = value.utcoffset() or timedelta(0)
    minutes = int(offset.total_seconds()) // 60
    sign = "-" if minutes < 0 else "+"
    hours, mins = divmod(abs(minutes), 60)
    return f"{text}{sign}{hours:02d}:{mins:02d}"


def _parse_time(value: str) -> datetime:
    match = _ISO8601_RE.fullmatch(value)
    if match is None:
        raise ValueError(f"cannot parse {value!r} as a timestamp")
    year, month, day, hour, minute, second, fraction, zone = match.groups()
    tz = timezone.utc
    if zone:
        sign = -1 if zone[0] == "-" else 1
        hours, mins = int(zone[1:3]), int(zone[4:6])
        tz = timezone(sign * timedelta(hours=hours, minutes=mins))
    microsecond = int(fraction[:6].ljust(6, "0")) if fraction else 0
    return datetime(
        int(year),
        int(month),
        int(day),
        int(hour or 0),
        int(minute or 0),
        int(second or 0),
        microsecond,
        tzinfo=tz,
    )


def _value_code(value) -> int:
    if isinstance(value, bool):
        return BOOLEAN
    if isinstance(value, int):
        return INTEGER
    if isinstance(value, float):
        return FLOAT
    if isinstance(value, (bytes, bytearray, memoryview)):
        return BLOB
    if isinstance(value, str):
        return TEXT
    if value is None:
        return NULL
    if isinstance(value, datetime):
        return ISO8601
    raise TypeError(f"unsupported value type: {type(value).__name__}")


def _role(value: int):
    try:
        return NodeRole(value)
    except ValueError:
        return value


@dataclass(frozen=True)
class Result:
    """Outcome of a statement execution."""

    last_insert_id: int
    rows_affected: int


class Message:
    """A single request or response, reused across calls."""

    def __init__(self) -> None:
        self.words = 0
        self.mtype = 0
        self.schema = 0
        self.extra = 0
        self._buf = bytearray()
        self._offset = 0

    def reset(self) -> None:
        """Clear the message so it can be encoded or decoded again."""
        self.words = 0
        self.mtype = 0
        self.schema = 0
        self.extra = 0
        self._buf.clear()
        self._offset = 0

    def rewind(self) -> None:
        """Move the body cursor back to the start."""
        self._offset = 0

    def body(self) -> Tuple[bytes, int]:
        """Return the body bytes and the current cursor offset."""
        return bytes(self._buf), self._offset

    # Wire hooks used by the transport.

    def _wire_header(self) -> bytes:
        return _HEADER.pack(self.words, self.mtype, self.schema, self.extra)

    def _wire_body(self) -> bytes:
        return bytes(self._buf[: self._offset])

    def _load_header(self, data: bytes) -> int:
        self.words, self.mtype, self.schema, self.extra = _HEADER.unpack(data)
        return self.words * WORD_SIZE

    def _load_body(self, data: bytes) -> None:
        self._buf = bytearray(data)
        self._offset = 0

    # Encoding.

    def _put(self, data: bytes) -> None:
        end = self._offset + len(data)
        self._buf[self._offset : end] = data
        self._offset = end

    def put_blob(self, value: bytes) -> None:
        """Append a length-prefixed, padded byte string."""
        data = bytes(value)
        self.put_uint64(len(data))
        self._put(data + bytes(_padding(len(data))))

    def put_string(self, value: str) -> None:
        """Append a nul-terminated, padded string."""
        data = value.encode("utf-8") + b"\x00"
        self._put(data + bytes(_padding(len(data))))

    def put_uint8(self, value: int) -> None:
        self._put(_U8.pack(value))

    def put_uint16(self, value: int) -> None:
        self._put(_U16.pack(value))

    def put_uint32(self, value: int) -> None:
        self._put(_U32.pack(value))

    def put_uint64(self, value: int) -> None:
        self._put(_U64.pack(value))

    def put_int64(self, value: int) -> None:
        self._put(_I64.pack(value))

    def put_float64(self, value: float) -> None:
        self._put(_F64.pack(value))

    def _put_values(self, values: list) -> None:
        codes = [_value_code(v) for v in values]
        for code in codes:
            self.put_uint8(code)
        self._put(bytes(_padding(self._offset)))
        for code, value in zip(codes, values):
            if code == INTEGER:
                self.put_int64(value)
            elif code == FLOAT:
                self.put_float64(value)
            elif code == BOOLEAN:
                self.put_uint64(1 if value else 0)
            elif code == BLOB:
                self.put_blob(value)
            elif code == TEXT:
                self.put_string(value)
            elif code == NULL:
                self.put_int64(0)
            else:
                self.put_string(_format_time(value))

    def put_named_values(self, values: Sequence) -> None:
        """Encode binding parameters with an 8-bit count."""
        values = list(values or ())
        if not values:
            return
        if len(values) > _MAX_UINT8:
            raise ValueError("too many parameters")
        self.put_uint8(len(values))
        self._put_values(values)

    def put_named_values32(self, values: Sequence) -> None:
        """Encode binding parameters with a 32-bit count."""
        values = list(values or ())
        if not values:
            return
        if len(values) > _MAX_UINT32:
            raise ValueError("too many parameters")
        self.put_uint32(len(values))
        self._put_values(values)

    def put_header(self, mtype: int, schema: int) -> None:
        """Finalize the message with its type and schema version."""
        if self._offset <= 0:
            raise ValueError("static offset is not positive")
        if self._offset % WORD_SIZE:
            raise ValueError("static body is not aligned")
        self.mtype = mtype
        self.schema = schema
        self.extra = 0
        self.words = self._offset // WORD_SIZE

    # Decoding.

    def get_header(self) -> Tuple[int, int]:
        """Return the message type and schema version."""
        return self.mtype, self.schema

    def _size(self) -> int:
        return self.words * WORD_SIZE

    def _short(self) -> ShortMessageError:
        return ShortMessageError(
            f"short message: type={self.mtype} words={self.words} off={self._offset}"
        )

    def _take(self, n: int) -> bytes:
        end = self._offset + n
        if end > self._size():
            raise self._short()
        chunk = bytes(self._buf[self._offset : end])
        self._offset = end
        return chunk

    def get_string(self) -> str:
        size = self._size()
        if self._offset >= size:
            raise self._short()
        index = self._buf.find(0, self._offset, size)
        if index == -1:
            raise ShortMessageError("no string found")
        text = self._buf[self._offset : index].decode("utf-8", errors="replace")
        length = index - self._offset + 1
        self._offset += length + _padding(length)
        return text

    def get_blob(self) -> bytes:
        size = self.get_uint64()
        data = self._take(size)
        self._take(_padding(size))
        return data

    def get_uint8(self) -> int:
        return _U8.unpack(self._take(1))[0]

    def get_uint16(self) -> int:
        return _U16.unpack(self._take(2))[0]

    def get_uint32(self) -> int:
        return _U32.unpack(self._take(4))[0]

    def get_uint64(self) -> int:
        return _U64.unpack(self._take(8))[0]

    def get_int64(self) -> int:
        return _I64.unpack(self._take(8))[0]

    def get_float64(self) -> float:
        return _F64.unpack(self._take(8))[0]

    def _get_node(self) -> NodeInfo:
        node_id = self.get_uint64()
        address = self.get_string()
        role = _role(self.get_uint64())
        return NodeInfo(node_id, address, role)

    def get_nodes(self) -> List[NodeInfo]:
        """Decode a list of servers."""
        return [self._get_node() for _ in range(self.get_uint64())]

    def get_result(self) -> Result:
        last_insert_id = self.get_uint64()
        rows_affected = self.get_uint64()
        return Result(last_insert_id, rows_affected)

    def get_rows(self) -> "Rows":
        """Decode the column names of a result set and return its rows."""
        columns = [self.get_string() for _ in range(self.get_uint64())]
        return Rows(columns, self)

    def get_files(self) -> "Files":
        return Files(self.get_uint64(), self)

    def has_been_consumed(self) -> bool:
        return self._offset == self._size()

    def last_byte(self) -> int:
        return self._buf[self._size() - 1]


class Rows:
    """A result set encoded in a message body."""

    def __init__(self, columns: List[str], message: Message) -> None:
        self.columns = columns
        self._message = message
        self._types: Optional[List[int]] = None

    def _read_types(self, save: bool) -> List[int]:
        if save and self._types is not None:
            return self._types
        if self._types is None:
            self._types = [0] * len(self.columns)
        types = self._types
        if not types:
            raise EndOfRows()

        # Each column takes a 4-bit slot; the row header is word aligned.
        header_size = -(-len(types) // 16) * WORD_SIZE
        message = self._message
        start = message._offset
        try:
            for i in range(header_size):
                slot = message.get_uint8()
                if slot == _ROWS_PART_MARKER:
                    raise RowsPart()
                if slot == _ROWS_EOF_MARKER:
                    raise EndOfRows()
                index = i * 2
                if index < len(types):
                    types[index] = slot & 0x0F
                if index + 1 < len(types):
                    types[index + 1] = slot >> 4
        finally:
            if save:
                message._offset = start
        return types

    def _decode(self, code: int):
        message = self._message
        if code == INTEGER:
            return message.get_int64()
        if code == FLOAT:
            return message.get_float64()
        if code == BLOB:
            return message.get_blob()
        if code == TEXT:
            return message.get_string()
        if code == NULL:
            message.get_uint64()
            return None
        if code == UNIX_TIME:
            return datetime.fromtimestamp(message.get_int64(), timezone.utc).astimezone()
        if code == ISO8601:
            value = message.get_string()
            if not value:
                return None
            return _parse_time(value.removesuffix("Z"))
        if code == BOOLEAN:
            return message.get_int64() != 0
        raise CowsqlError(f"unknown data type: {code}")

    def next(self) -> list:
        """Return the next row.

        Raises EndOfRows when the result set is exhausted and RowsPart when
        the current batch is done but the server has more rows.
        """
        types = self._read_types(save=False)
        return [self._decode(code) for code in list(types)]

    def close(self) -> bool:
        """Reset the underlying message.

        Return True when the server still has rows pending for this query.
        """
        message = self._message
        try:
            if message.has_been_consumed():
                return False
            slot = message.last_byte()
            if slot == _ROWS_PART_MARKER:
                return True
            if slot == _ROWS_EOF_MARKER:
                return False
            raise CowsqlError("unexpected end of message")
        finally:
            message.reset()

    def column_types(self) -> List[str]:
        """Return the database type names of the columns."""
        try:
            types = self._read_types(save=True)
        except (EndOfRows, RowsPart):
            types = self._types or []
        names = []
        for code in types:
            name = _TYPE_NAMES.get(code)
            if name is None:
                raise CowsqlError(f"unknown data type: {code}")
            names.append(name)
        return names


class Files:
    """A set of files encoded in a message body."""

    def __init__(self, count: int, message: Message) -> None:
        self._remaining = count
        self._message = message

    def next(self) -> Optional[Tuple[str, bytes]]:
        """Return the next (name, data) pair, or None when there are no more."""
        if self._remaining == 0:
            return None
        self._remaining -= 1
        name = self._message.get_string()
        length = self._message.get_uint64()
        return name, self._message._take(length)

    def __iter__(self) -> Iterator[Tuple[str, bytes]]:
        while (item := self.next()) is not None:
            yield item

    def close(self) -> None:
        self._message.reset()