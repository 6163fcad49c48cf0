"""Test doubles: a manual clock with timers, a fake broker link and an in-process RESP server."""

import asyncio

from aioredisc import ConnectionState, NotConnectedError, RespProtocol, StreamConnection


async def drain(rounds: int = 20):
    """Lets every ready task and callback on the loop run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class ManualTimer:
    """Timer with the same interface as `pubsub_client.Timer`, driven by a FakeClock."""

    def __init__(self, clock, name="", verbose=0):
        self.clock = clock
        self.name = name
        self.verbose = verbose
        self.deadline = None
        self.armed_at = []
        self._callback = None

    @property
    def pending(self):
        return self._callback is not None

    def schedule_after(self, delay, callback):
        self.deadline = self.clock.now + delay
        self.armed_at.append(self.clock.now)
        self._callback = callback

    def cancel(self):
        self._callback = None
        self.deadline = None

    def fire(self):
        callback = self._callback
        self._callback = None
        self.deadline = None
        result = callback()
        if asyncio.iscoroutine(result):
            asyncio.ensure_future(result)


class FakeClock:
    """Simulated loop time. Timers only fire from `advance()`."""

    def __init__(self):
        self.now = 0.0
        self.timers = []

    def timer_factory(self, name="", verbose=0):
        timer = ManualTimer(self, name, verbose)
        self.timers.append(timer)
        return timer

    def timer(self, name):
        return next(t for t in self.timers if t.name == name)

    def pending(self):
        return [t for t in self.timers if t.pending]

    async def advance(self, seconds):
        target = self.now + seconds
        while True:
            due = [t for t in self.timers if t.pending and t.deadline <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.deadline)
            self.now = timer.deadline
            timer.fire()
            await drain()
        self.now = target


class FakeConnection:
    """Broker link double recording every call with its simulated time."""

    def __init__(self, clock=None):
        self.clock = clock or FakeClock()
        self.state = ConnectionState.DISCONNECTED
        self.fail_connects = 0
        self.connect_gate = None
        self.connect_calls = []
        self.disconnect_calls = 0
        self.published = []
        self.subscribe_calls = []
        self.subscriptions = {}
        self.subscribe_error = None
        self._error_handler = None
        self._last_error = None
        self._attempt = 0

    def is_connected(self):
        return self.state is ConnectionState.CONNECTED

    def install_error_handler(self, handler):
        self._error_handler = handler

    def get_last_error(self):
        return self._last_error

    async def connect(self, address, port):
        self._attempt += 1
        attempt = self._attempt
        self.connect_calls.append((self.clock.now, address, port))
        self.state = ConnectionState.CONNECTING
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        if attempt != self._attempt or self.state is not ConnectionState.CONNECTING:
            self._last_error = "Connect aborted by disconnect"
            return False
        if self.fail_connects > 0:
            self.fail_connects -= 1
            self.state = ConnectionState.DISCONNECTED
            self._last_error = "Connection refused"
            return False
        self.state = ConnectionState.CONNECTED
        self._last_error = None
        return True

    async def disconnect(self):
        if self.state is ConnectionState.DISCONNECTED:
            return
        self.disconnect_calls += 1
        self._attempt += 1
        self.state = ConnectionState.DISCONNECTED
        self.subscriptions.clear()

    async def publish(self, channel, payload):
        if not self.is_connected():
            raise NotConnectedError("fake: not connected")
        self.published.append((self.clock.now, channel, payload))
        return 1

    async def subscribe(self, channel, handler):
        if not self.is_connected():
            raise NotConnectedError("fake: not connected")
        if self.subscribe_error is not None:
            error, self.subscribe_error = self.subscribe_error, None
            raise error
        self.subscribe_calls.append((self.clock.now, channel))
        self.subscriptions[channel] = handler
        return len(self.subscriptions)

    def inject_error(self, error="Connection reset by peer"):
        self.state = ConnectionState.DISCONNECTED
        self.subscriptions.clear()
        return self._error_handler(error)

    def deliver(self, channel, payload):
        return self.subscriptions[channel](payload)


def encode_reply(value) -> bytes:
    if isinstance(value, Exception):
        return b"-" + str(value).encode() + b"\r\n"
    if isinstance(value, str):
        return b"+" + value.encode() + b"\r\n"
    if isinstance(value, int):
        return b":%d\r\n" % value
    if isinstance(value, bytes):
        return b"$%d\r\n%s\r\n" % (len(value), value)
    if value is None:
        return b"$-1\r\n"
    return b"*%d\r\n" % len(value) + b"".join(encode_reply(v) for v in value)


class FakeRedisServer:
    """
    Minimal in-process Redis speaking enough RESP for PING, PUBLISH,
    SUBSCRIBE and UNSUBSCRIBE.
    """

    def __init__(self, port=0):
        self.port = port
        self.commands = []
        self.writers = set()
        self.channels = {}
        self.ignore_pings = False
        self.mute = False
        self._server = None

    async def start(self):
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", self.port)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def stop(self):
        await self.drop_clients()
        self._server.close()
        await self._server.wait_closed()

    async def drop_clients(self):
        for writer in list(self.writers):
            writer.close()
        self.writers.clear()
        self.channels.clear()
        await drain()

    def commands_named(self, name):
        return [c for c in self.commands if c[0].upper() == name.encode()]

    async def _handle(self, reader, writer):
        self.writers.add(writer)
        protocol = RespProtocol(StreamConnection(reader, writer))
        subscribed = set()
        try:
            while True:
                command = await protocol.read_reply()
                self.commands.append(command)
                name = command[0].upper()
                if self.mute or (name == b"PING" and self.ignore_pings):
                    continue
                if name == b"PING":
                    reply = [b"pong", b""] if subscribed else "PONG"
                elif name == b"PUBLISH":
                    channel, payload = command[1], command[2]
                    receivers = list(self.channels.get(channel, ()))
                    for subscriber in receivers:
                        subscriber.write(encode_reply([b"message", channel, payload]))
                    reply = len(receivers)
                elif name == b"SUBSCRIBE":
                    channel = command[1]
                    subscribed.add(channel)
                    self.channels.setdefault(channel, set()).add(writer)
                    reply = [b"subscribe", channel, len(subscribed)]
                elif name == b"UNSUBSCRIBE":
                    channel = command[1]
                    subscribed.discard(channel)
                    self.channels.get(channel, set()).discard(writer)
                    reply = [b"unsubscribe", channel, len(subscribed)]
                else:
                    reply = Exception(f"ERR unknown command '{name.decode()}'")
                writer.write(encode_reply(reply))
                await writer.drain()
        except (ConnectionError, OSError):
            pass
        finally:
            self.writers.discard(writer)
            for writers in self.channels.values():
                writers.discard(writer)
            writer.close()
