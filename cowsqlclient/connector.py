"""Finding the cluster leader and connecting to it."""

from __future__ import annotations

import itertools
import socket
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Tuple

from .codec import decode_welcome, encode_client, encode_leader
from .constants import VERSION_LEGACY, VERSION_ONE
from .errors import BadProtocolError, CowsqlError, NoAvailableLeaderError
from .logfunc import Level, LogFunc
from .message import Message
from .protocol import Protocol, decode_node_compat, dial, handshake
from .store import NodeStore

DialFunc = Callable[[str, Optional[float]], socket.socket]

_ATTEMPT_ERRORS = (CowsqlError, OSError, EOFError, ValueError)


@dataclass
class Config:
    """Connection parameters. Durations are in seconds; zero means default."""

    dial: Optional[DialFunc] = None
    dial_timeout: float = 0.0
    attempt_timeout: float = 0.0
    backoff_factor: float = 0.0
    backoff_cap: float = 0.0
    retry_limit: int = 0


def backoff_delays(factor: float, cap: float, limit: int = 0) -> Iterator[float]:
    """Yield the delay to wait before each connection attempt.

    The first attempt has no delay; later ones back off exponentially up to
    ``cap``. With ``limit`` zero the attempts never end, otherwise there are
    ``limit + 1`` of them.
    """
    attempts = itertools.count() if limit == 0 else range(limit + 1)
    for k in attempts:
        if k == 0:
            yield 0.0
            continue
        delay = factor * (2.0 ** min(k, 1023))
        if delay > cap or delay <= 0:
            delay = cap
        yield delay


def _noop_log(level, fmt, *args) -> None:
    pass


def _prefixed(log: LogFunc, prefix: str) -> LogFunc:
    escaped = prefix.replace("%", "%%")

    def wrapped(level: Level, fmt: str, *args) -> None:
        log(level, (escaped if args else prefix) + fmt, *args)

    return wrapped


def _remaining(deadline: Optional[float]) -> Optional[float]:
    return None if deadline is None else deadline - time.monotonic()


def _expired(deadline: Optional[float]) -> bool:
    return deadline is not None and time.monotonic() >= deadline


def _earliest(a: Optional[float], b: float) -> float:
    return b if a is None else min(a, b)


def _root_cause(err: BaseException) -> BaseException:
    while err.__cause__ is not None:
        err = err.__cause__
    return err


class Connector:
    """Creates protocol connections to the current leader of a cluster."""

    def __init__(
        self,
        id: int,
        store: NodeStore,
        config: Optional[Config] = None,
        log: Optional[LogFunc] = None,
    ) -> None:
        config = Config(**vars(config)) if config is not None else Config()
        if config.dial is None:
            config.dial = dial
        if config.dial_timeout == 0:
            config.dial_timeout = 5.0
        if config.attempt_timeout == 0:
            config.attempt_timeout = 15.0
        if config.backoff_factor == 0:
            config.backoff_factor = 0.1
        if config.backoff_cap == 0:
            config.backoff_cap = 1.0
        self.id = id
        self.store = store
        self.config = config
        self._log = log or _noop_log

    def connect(self, timeout: Optional[float] = None) -> Protocol:
        """Find the leader and return a connection to it.

        Raises NoAvailableLeaderError when the retries are exhausted or the
        timeout expires first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        cfg = self.config
        delays = backoff_delays(cfg.backoff_factor, cfg.backoff_cap, cfg.retry_limit)
        for attempt, delay in enumerate(delays, start=1):
            if delay:
                remaining = _remaining(deadline)
                time.sleep(delay if remaining is None else max(0.0, min(delay, remaining)))
            if _expired(deadline):
                break
            log = _prefixed(self._log, f"attempt {attempt}: ")
            try:
                protocol = self._connect_attempt_all(log, deadline)
            except CowsqlError:
                continue
            if _expired(deadline):
                protocol.close()
                break
            return protocol
        raise NoAvailableLeaderError()

    def _connect_attempt_all(self, log: LogFunc, deadline: Optional[float]) -> Protocol:
        try:
            servers = self.store.get()
        except Exception as err:
            raise CowsqlError(f"get servers: {err}") from err

        for server in sorted(servers, key=lambda s: int(s.role)):
            slog = _prefixed(log, f"server {server.address}: ")
            attempt_deadline = _earliest(
                deadline, time.monotonic() + self.config.attempt_timeout
            )

            version = VERSION_ONE
            try:
                try:
                    protocol, leader = self._connect_attempt_one(
                        server.address, version, attempt_deadline
                    )
                except BadProtocolError:
                    slog(Level.WARN, "unsupported protocol %d, attempt with legacy", version)
                    version = VERSION_LEGACY
                    protocol, leader = self._connect_attempt_one(
                        server.address, version, attempt_deadline
                    )
            except _ATTEMPT_ERRORS as err:
                slog(Level.WARN, "%s", str(err))
                continue

            if protocol is not None:
                slog(Level.DEBUG, "connected")
                return protocol
            if not leader:
                slog(Level.WARN, "no known leader")
                continue

            slog(Level.DEBUG, "connect to reported leader %s", leader)
            leader_deadline = _earliest(
                attempt_deadline, time.monotonic() + self.config.attempt_timeout
            )
            try:
                protocol, _ = self._connect_attempt_one(leader, version, leader_deadline)
            except _ATTEMPT_ERRORS as err:
                slog(Level.WARN, "reported leader unavailable err=%s", str(err))
                continue
            if protocol is None:
                slog(Level.WARN, "reported leader server is not the leader")
                continue
            slog(Level.DEBUG, "connected")
            return protocol

        raise NoAvailableLeaderError()

    def _connect_attempt_one(
        self, address: str, version: int, deadline: Optional[float]
    ) -> Tuple[Optional[Protocol], str]:
        """Connect to a server and check whether it is the leader.

        Return (protocol, "") when it is, (None, leader) when it reports
        another leader and (None, "") when it knows of none.
        """
        dial_timeout = self.config.dial_timeout
        remaining = _remaining(deadline)
        if remaining is not None:
            if remaining <= 0:
                raise CowsqlError("dial: deadline exceeded")
            dial_timeout = min(dial_timeout, remaining)

        try:
            conn = self.config.dial(address, dial_timeout)
        except (OSError, ValueError) as err:
            raise CowsqlError(f"dial: {err}") from err

        try:
            protocol = handshake(conn, version, _remaining(deadline))
        except BaseException:
            conn.close()
            raise

        request, response = Message(), Message()
        encode_leader(request)
        try:
            protocol.call(request, response, _remaining(deadline))
        except CowsqlError as err:
            protocol.close()
            cause = _root_cause(err)
            # A pre-1.0 node closes the connection when sent version 1.
            if isinstance(cause, EOFError) or (
                isinstance(cause, OSError) and not isinstance(cause, TimeoutError)
            ):
                raise BadProtocolError() from err
            raise

        try:
            _, leader = decode_node_compat(protocol, response)
        except BaseException:
            protocol.close()
            raise

        if leader == "":
            protocol.close()
            return None, ""
        if leader != address:
            protocol.close()
            return None, leader

        encode_client(request, self.id)
        try:
            protocol.call(request, response, _remaining(deadline))
            decode_welcome(response)
        except BaseException:
            protocol.close()
            raise
        return protocol, ""