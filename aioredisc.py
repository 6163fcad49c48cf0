"""
Asynchronous Redis publish/subscribe connection for CPython.

This module provides a single logical link to a Redis broker speaking the
RESP protocol over asyncio streams. It supports connecting, publishing,
subscribing and an installable error handler that is invoked whenever the
transport fails after the link has been established.
"""
import asyncio
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from time import monotonic

from rich.console import Console

console = Console()

__version__ = "1.0.0"


def ticks_ms():
    return int(monotonic() * 1000)


def ticks_diff(ticks1, ticks2):
    return ticks1 - ticks2


def log(msg: str = ""):
    now = datetime.now(timezone.utc)
    s = f"{now:%Y-%m-%d %H:%M:%S}.{now.microsecond // 1000:03d} {msg}"
    console.print(s, markup=False, highlight=False)


def dump_array(data, header=None, length=16):
    if not data:
        return
    s = f"{header} ({len(data)} bytes)" if header is not None else ""
    print_table = "".join(
        (len(repr(chr(x))) == 3) and chr(x) or "." for x in range(256)
    )
    lines = []
    for c in range(0, len(data), length):
        chars = data[c : c + length]
        hex_string = " ".join(f"{x:02x}" for x in chars)
        printable = "".join(f"{(x <= 127 and print_table[x]) or '.'}" for x in chars)
        lines.append("%04d  %-*s  %s\n" % (c, length * 3, hex_string, printable))
    log(f"{s}\n{''.join(lines)}")


class BrokerError(Exception):
    """Base exception for broker connection errors."""


class ConnectError(BrokerError):
    """Raised when the transport connection cannot be established."""


class NotConnectedError(BrokerError):
    """Raised when a command is issued on a link that is not connected."""


class ReplyError(BrokerError):
    """An error reply (``-ERR ...``) sent back by the broker."""


class ProtocolError(BrokerError):
    """Raised when the broker sends a frame that cannot be parsed."""


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class StreamConnection:
    """
    Manages an asynchronous network stream connection.

    Attributes:
        reader (asyncio.StreamReader): The stream reader.
        writer (asyncio.StreamWriter): The stream writer.
        _eof (bool): True if the end of the stream has been reached.
        _debug (bool): If True, enables debug logging.
        _host (str): The host address for the connection.
        _port (int): The port number for the connection.
        _timeout (Optional[float]): Connect and write timeout in seconds.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        debug: bool = False,
    ):
        self.reader = reader
        self.writer = writer
        self._eof = False
        self._debug = debug
        self._host = None
        self._port = None
        self._timeout = None

    @classmethod
    async def open(
        cls,
        host: str,
        port: int,
        timeout: float = None,
        debug: bool = False,
    ) -> "StreamConnection":
        """
        Opens a new stream connection.

        Args:
            host: The host address to connect to.
            port: The port number to connect to.
            timeout: Optional timeout in seconds for the connection attempt.
            debug: If True, enables debug logging.

        Returns:
            An instance of StreamConnection.

        Raises:
            ConnectError: If the connection fails.
        """
        self = cls(None, None, debug)
        self._host = host
        self._port = port
        self._timeout = timeout
        await self._connect()
        return self

    async def _connect(self):
        """Establishes the network connection."""
        try:
            if self._timeout:
                reader, writer = await asyncio.wait_for(
                    asyncio.open_connection(self._host, self._port),
                    timeout=self._timeout,
                )
            else:
                reader, writer = await asyncio.open_connection(self._host, self._port)
        except asyncio.TimeoutError as e:
            raise ConnectError(
                f"Timed out connecting to {self._host}:{self._port} after {self._timeout}s"
            ) from e
        except OSError as e:
            raise ConnectError(f"Failed to connect to {self._host}:{self._port}: {e}") from e
        self.reader = reader
        self.writer = writer
        self._eof = False

    async def write(self, data: bytes, timeout: float = None):
        """
        Writes data to the stream and waits for the buffer to drain.

        Args:
            data: The bytes to write.
            timeout: Optional timeout in seconds for the drain.

        Raises:
            ConnectionError: If the stream is closed or the write fails.
        """
        if self.writer is None or self._eof:
            raise ConnectionError("Cannot write, stream is not available.")
        if self._debug:
            log(f"Writing {len(data)} bytes")
        try:
            self.writer.write(data)
            await asyncio.wait_for(self.writer.drain(), timeout or self._timeout or None)
        except asyncio.TimeoutError as e:
            raise ConnectionError(f"Write timed out after {timeout or self._timeout}s") from e
        except OSError as e:
            raise ConnectionError(f"Write failed: {e}") from e

    async def readline(self) -> bytes:
        """
        Reads one CRLF terminated line, without the terminator.

        Raises:
            ConnectionError: If the peer closed the stream.
        """
        if self._eof or self.reader is None:
            raise ConnectionError("Connection closed by peer")
        try:
            line = await self.reader.readline()
        except ValueError as e:
            raise ProtocolError(f"Reply line too long: {e}") from e
        if not line.endswith(b"\n"):
            self._eof = True
            raise ConnectionError("Connection closed by peer")
        return line.rstrip(b"\r\n")

    async def readexactly(self, size: int) -> bytes:
        """
        Reads exactly `size` bytes from the stream.

        Raises:
            ConnectionError: If the peer closed the stream before `size` bytes arrived.
        """
        if self._eof or self.reader is None:
            raise ConnectionError("Connection closed by peer")
        try:
            return await self.reader.readexactly(size)
        except asyncio.IncompleteReadError as e:
            self._eof = True
            raise ConnectionError(
                f"Connection closed by peer after {len(e.partial)} of {size} bytes"
            ) from e

    async def close(self):
        """Closes the stream connection."""
        if self._debug:
            log("Closing connection")
        if self.writer:
            try:
                self.writer.close()
                await self.writer.wait_closed()
            except OSError as e:
                log(f"StreamConnection:close error: {e}")
        self.reader = None
        self.writer = None
        self._eof = True


class ConnectionStats:
    """
    Collects statistics for a single broker connection.

    Attributes:
        connections_sent (int): Number of connection attempts.
        connections_failed (int): Number of failed connection attempts.
        transport_errors (int): Number of transport failures after connect.
        commands_sent (int): Number of commands written to the broker.
        replies_received (int): Number of command replies read back.
        messages_published (int): Number of PUBLISH commands acknowledged.
        messages_received (int): Number of channel messages delivered.
        bytes_sent (int): Total number of payload bytes published.
        bytes_received (int): Total number of payload bytes received.
        max_list_size (int): Maximum number of RTT samples kept.
        ping_rtt_ms_list (list[int]): Recent PING round-trip times.
    """

    def __init__(self):
        self.max_list_size = 10
        self.ping_rtt_ms_list = []
        self.reset()

    def connect(self):
        self.connections_sent += 1

    def connect_fail(self):
        self.connections_failed += 1

    def transport_error(self):
        self.transport_errors += 1

    def command(self):
        self.commands_sent += 1

    def reply(self):
        self.replies_received += 1

    def publish(self, payload_size: int):
        self.messages_published += 1
        self.bytes_sent += payload_size

    def receive(self, payload_size: int):
        self.messages_received += 1
        self.bytes_received += payload_size

    def ping(self, rtt_ms: int):
        if len(self.ping_rtt_ms_list) >= self.max_list_size:
            self.ping_rtt_ms_list.pop(0)
        self.ping_rtt_ms_list.append(rtt_ms)

    def reset(self):
        """Resets all statistics to their initial values."""
        self.connections_sent = 0
        self.connections_failed = 0
        self.transport_errors = 0
        self.commands_sent = 0
        self.replies_received = 0
        self.messages_published = 0
        self.messages_received = 0
        self.bytes_sent = 0
        self.bytes_received = 0
        self.ping_rtt_ms_list.clear()

    def get_stats(self) -> dict:
        ping_rtt_ms = (
            sum(self.ping_rtt_ms_list) / len(self.ping_rtt_ms_list)
            if self.ping_rtt_ms_list
            else 0
        )
        return {
            "connections_sent": self.connections_sent,
            "connections_failed": self.connections_failed,
            "transport_errors": self.transport_errors,
            "commands_sent": self.commands_sent,
            "replies_received": self.replies_received,
            "messages_published": self.messages_published,
            "messages_received": self.messages_received,
            "bytes_sent": self.bytes_sent,
            "bytes_received": self.bytes_received,
            "ping_rtt_ms": int(ping_rtt_ms),
        }


class RespProtocol:
    """
    Encodes commands and parses replies of the Redis serialization protocol.

    Commands travel as arrays of bulk strings. Replies are decoded into
    Python values: simple strings become ``str``, integers ``int``, bulk
    strings ``bytes``, arrays ``list`` and null bulk strings or arrays
    ``None``. Error replies are returned (not raised) as ``ReplyError``
    instances so that the caller waiting for that reply can raise them.

    Attributes:
        stream (StreamConnection): The stream the protocol reads and writes.
        verbose (int): Verbosity level; 2 dumps every frame.
        timeout_sec (Optional[float]): Write timeout in seconds.
    """

    SIMPLE_STRING = ord("+")
    ERROR = ord("-")
    INTEGER = ord(":")
    BULK_STRING = ord("$")
    ARRAY = ord("*")

    CRLF = b"\r\n"

    def __init__(self, stream: StreamConnection, verbose: int = 0, timeout_sec: float = None):
        self.stream = stream
        self.verbose = verbose
        self.timeout_sec = timeout_sec

    @classmethod
    async def open(cls, host: str, port: int, timeout_sec: float = None, verbose: int = 0) -> "RespProtocol":
        stream = await StreamConnection.open(host, port, timeout=timeout_sec, debug=verbose == 2)
        return cls(stream, verbose=verbose, timeout_sec=timeout_sec)

    @classmethod
    def encode_command(cls, *args) -> bytes:
        """
        Encodes a command as a RESP array of bulk strings.

        Args:
            *args: Command name and arguments; ``str``, ``bytes`` or ``int``.

        Returns:
            The encoded frame.

        Raises:
            TypeError: If an argument has an unsupported type.
        """
        if not args:
            raise ValueError("Cannot encode an empty command")
        frame = bytearray(b"*%d\r\n" % len(args))
        for arg in args:
            if isinstance(arg, (bytes, bytearray, memoryview)):
                data = bytes(arg)
            elif isinstance(arg, str):
                data = arg.encode("utf-8")
            elif isinstance(arg, int) and not isinstance(arg, bool):
                data = str(arg).encode("ascii")
            else:
                raise TypeError(f"Unsupported command argument type: {type(arg).__name__}")
            frame.extend(b"$%d\r\n" % len(data))
            frame.extend(data)
            frame.extend(cls.CRLF)
        return bytes(frame)

    async def send_command(self, *args):
        if not self.stream:
            raise ConnectionError("Cannot send command, stream is not available.")
        frame = self.encode_command(*args)
        if self.verbose == 2:
            dump_array(frame, header=f"Sending {args[0]}")
        await self.stream.write(frame, timeout=self.timeout_sec)

    async def read_reply(self):
        """
        Reads and decodes the next reply frame.

        Raises:
            ConnectionError: If the stream closes mid-frame.
            ProtocolError: If the frame is malformed.
        """
        if not self.stream:
            raise ConnectionError("Cannot read reply, stream is not available.")
        line = await self.stream.readline()
        if not line:
            raise ProtocolError("Empty reply line")
        if self.verbose == 2:
            dump_array(line, header="Received")

        kind, rest = line[0], line[1:]
        if kind == self.SIMPLE_STRING:
            return rest.decode("utf-8", errors="replace")
        if kind == self.ERROR:
            return ReplyError(rest.decode("utf-8", errors="replace"))
        if kind == self.INTEGER:
            return self._parse_int(rest)
        if kind == self.BULK_STRING:
            size = self._parse_int(rest)
            if size < 0:
                return None
            data = await self.stream.readexactly(size + 2)
            if data[-2:] != self.CRLF:
                raise ProtocolError("Bulk string is not CRLF terminated")
            return data[:-2]
        if kind == self.ARRAY:
            count = self._parse_int(rest)
            if count < 0:
                return None
            return [await self.read_reply() for _ in range(count)]
        raise ProtocolError(f"Unknown reply type: {line[:1]!r}")

    @staticmethod
    def _parse_int(data: bytes) -> int:
        try:
            return int(data)
        except ValueError as e:
            raise ProtocolError(f"Invalid integer in reply: {data!r}") from e

    async def close(self):
        if self.stream:
            await self.stream.close()
            self.stream = None


class RedisConnection:
    """
    A single logical link to a Redis broker.

    Replies to commands are matched to callers in the order the commands
    were sent. Once the link carries a subscription, Redis pushes channel
    messages on the same stream; those are routed to the handler
    registered for their channel instead.

    Attributes:
        name (str): Label used in log lines.
        address (Optional[str]): Address of the last connect attempt.
        port (Optional[int]): Port of the last connect attempt.
        state (ConnectionState): Current link state.
        connect_timeout (float): Timeout in seconds for connect and writes.
        keepalive (float): PING interval in seconds, 0 disables it.
        verbose (int): Verbosity level for logging (0: off, 1: info, 2: frame dumps).
        subscriptions (dict): Channel name -> message handler.
        stats (ConnectionStats): Statistics for this link.
        protocol (Optional[RespProtocol]): The protocol handler of the live link.
        last_rx (int): Timestamp of the last frame received (via `ticks_ms`).
    """

    MESSAGE = b"message"

    def __init__(
        self,
        name: str = "redis",
        connect_timeout: float = 5,
        keepalive: float = 0,
        verbose: int = 0,
        stats: ConnectionStats | None = None,
    ):
        self.name = name
        self.address = None
        self.port = None
        self.state = ConnectionState.DISCONNECTED
        self.connect_timeout = connect_timeout
        self.keepalive = keepalive
        self.verbose = verbose
        self.subscriptions = {}
        self.stats: ConnectionStats = stats or ConnectionStats()
        self.protocol: RespProtocol | None = None
        self.last_rx = 0

        self._error_handler = None
        self._last_error = None
        self._attempt = 0
        self._pending = deque()
        self._receive_task = None
        self._ping_task = None

    def __repr__(self) -> str:
        return f"RedisConnection(name='{self.name}', address='{self.address}', port={self.port}, state={self.state.value})"

    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def install_error_handler(self, handler):
        """
        Installs the callback invoked on transport errors after connect.

        Only one handler is kept; installing another replaces it.

        Args:
            handler: ``handler(error_text)``, plain function or coroutine function.
        """
        self._error_handler = handler

    def get_last_error(self) -> str | None:
        return self._last_error

    async def connect(self, address: str, port: int) -> bool:
        """
        Connects to the broker.

        Args:
            address: Broker host name or IP address.
            port: Broker TCP port.

        Returns:
            True if the connection was established, False otherwise. The
            failure reason is available from `get_last_error()`.

        Raises:
            BrokerError: If the link is not disconnected.
        """
        if self.state is not ConnectionState.DISCONNECTED:
            raise BrokerError(f"{self.name}: connect called while {self.state.value}")

        self._attempt += 1
        attempt = self._attempt
        self.address = address
        self.port = port
        self.state = ConnectionState.CONNECTING
        self.stats.connect()
        if self.verbose:
            log(f"{self.name}: connecting to {address}:{port}")

        try:
            protocol = await RespProtocol.open(
                address, port, timeout_sec=self.connect_timeout, verbose=self.verbose
            )
        except ConnectError as e:
            if attempt == self._attempt:
                self.state = ConnectionState.DISCONNECTED
            self._last_error = str(e)
            self.stats.connect_fail()
            return False

        if attempt != self._attempt or self.state is not ConnectionState.CONNECTING:
            await protocol.close()
            self._last_error = "Connect aborted by disconnect"
            self.stats.connect_fail()
            return False

        self.protocol = protocol
        self.state = ConnectionState.CONNECTED
        self._last_error = None
        self.last_rx = ticks_ms()
        self._receive_task = asyncio.create_task(self._receive_loop())
        if self.keepalive > 0:
            self._ping_task = asyncio.create_task(self._keep_alive())
        return True

    async def disconnect(self):
        """
        Tears the link down immediately.

        Safe to call when already disconnected. The error handler is not invoked.
        """
        if self.state is ConnectionState.DISCONNECTED:
            return
        if self.state is ConnectionState.CONNECTING:
            self._attempt += 1
            self.state = ConnectionState.DISCONNECTED
            return
        log(f"{self.name}: disconnecting from {self.address}:{self.port}")
        await self._teardown("disconnected")

    async def execute(self, *args):
        """
        Sends a command and waits for its reply.

        Returns:
            The decoded reply.

        A reply missing after `connect_timeout` seconds is a transport error.
        A `connect_timeout` of 0 waits without a deadline.

        Raises:
            NotConnectedError: If the link is down, fails before the reply
                arrives or the reply is late.
            ReplyError: If the broker answers with an error.
        """
        if not self.is_connected():
            raise NotConnectedError(f"{self.name}: not connected")
        future = asyncio.get_running_loop().create_future()
        self._pending.append(future)
        try:
            await self.protocol.send_command(*args)
            self.stats.command()
        except OSError as e:
            await self._handle_transport_error(str(e))
        try:
            reply = await asyncio.wait_for(future, timeout=self.connect_timeout or None)
        except asyncio.TimeoutError:
            error = f"No {args[0]} reply within {self.connect_timeout}s"
            await self._handle_transport_error(error)
            raise NotConnectedError(f"{self.name}: {error}") from None
        if isinstance(reply, ReplyError):
            raise reply
        return reply

    async def publish(self, channel: str, payload: str | bytes) -> int:
        """
        Publishes a payload to a channel.

        Returns:
            The number of clients that received the message.

        Raises:
            NotConnectedError: If the link is not connected.
        """
        if not self.is_connected():
            raise NotConnectedError(f"{self.name}: cannot publish, not connected")
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        receivers = await self.execute("PUBLISH", channel, payload)
        self.stats.publish(len(payload))
        return receivers

    async def subscribe(self, channel: str, handler) -> int:
        """
        Subscribes to a channel.

        Args:
            channel: The channel name.
            handler: ``handler(payload: bytes)`` called for every message on
                     the channel; coroutine results are awaited.

        Returns:
            The number of channels this link is subscribed to.

        Raises:
            NotConnectedError: If the link is not connected.
            ReplyError: If the broker rejects the subscription.
        """
        if not self.is_connected():
            raise NotConnectedError(f"{self.name}: cannot subscribe, not connected")
        if channel in self.subscriptions:
            self.subscriptions[channel] = handler
            return len(self.subscriptions)

        # Registered first: a message may follow the confirmation in the same read.
        self.subscriptions[channel] = handler
        try:
            reply = await self.execute("SUBSCRIBE", channel)
        except BrokerError:
            self.subscriptions.pop(channel, None)
            raise
        if self.verbose:
            log(f"{self.name}: subscribed to {channel}")
        return reply[2] if isinstance(reply, list) and len(reply) == 3 else len(self.subscriptions)

    async def unsubscribe(self, channel: str) -> bool:
        if channel not in self.subscriptions or not self.is_connected():
            return False
        await self.execute("UNSUBSCRIBE", channel)
        self.subscriptions.pop(channel, None)
        return True

    async def ping(self):
        start = ticks_ms()
        reply = await self.execute("PING")
        self.stats.ping(ticks_diff(ticks_ms(), start))
        return reply

    async def _keep_alive(self):
        """Background task sending PING when the link has been idle for a keep-alive interval."""
        while self.is_connected():
            await asyncio.sleep(self.keepalive)
            if not self.is_connected():
                break
            if ticks_diff(ticks_ms(), self.last_rx) < self.keepalive * 1000:
                continue
            try:
                if self.verbose:
                    log(f"{self.name}: sending PING (keepalive: {self.keepalive}s)")
                await self.ping()
            except NotConnectedError:
                break
            except ReplyError as e:
                log(f"{self.name}: PING rejected: {e}")

    async def _receive_loop(self):
        """Background task reading replies and channel messages."""
        while self.is_connected():
            try:
                reply = await self.protocol.read_reply()
            except (OSError, BrokerError) as e:
                await self._handle_transport_error(str(e))
                break
            self.last_rx = ticks_ms()

            if self._is_message(reply):
                await self._dispatch_message(reply[1], reply[2])
                continue

            self.stats.reply()
            if not self._pending:
                log(f"{self.name}: unexpected reply {reply!r}")
                continue
            future = self._pending.popleft()
            if not future.done():
                future.set_result(reply)

    def _is_message(self, reply) -> bool:
        return isinstance(reply, list) and len(reply) == 3 and reply[0] == self.MESSAGE

    async def _dispatch_message(self, channel: bytes, payload: bytes):
        self.stats.receive(len(payload))
        handler = self.subscriptions.get(channel.decode("utf-8", errors="replace"))
        if handler is None:
            log(f"{self.name}: message on unknown channel {channel!r}")
            return
        try:
            cb = handler(payload)
            if asyncio.iscoroutine(cb):
                await cb
        except Exception as e:
            console.print_exception()
            log(f"{self.name}: error in message handler: {type(e).__name__}: {e}")

    async def _handle_transport_error(self, error: str):
        if self.state is not ConnectionState.CONNECTED:
            return
        self._last_error = error
        self.stats.transport_error()
        log(f"{self.name}: transport error: {error}")
        await self._teardown(error)

        if self._error_handler:
            try:
                cb = self._error_handler(error)
                if asyncio.iscoroutine(cb):
                    await cb
            except Exception as e:
                console.print_exception()
                log(f"{self.name}: error in error handler: {type(e).__name__}: {e}")

    async def _teardown(self, reason: str):
        self.state = ConnectionState.DISCONNECTED
        current = asyncio.current_task()

        tasks = (self._ping_task, self._receive_task)
        self._ping_task = None
        self._receive_task = None
        for task in tasks:
            if task is None or task is current or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        while self._pending:
            future = self._pending.popleft()
            if not future.done():
                future.set_exception(NotConnectedError(f"{self.name}: {reason}"))

        self.subscriptions.clear()
        if self.protocol:
            await self.protocol.close()
            self.protocol = None
