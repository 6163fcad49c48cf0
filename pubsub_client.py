"""
Self-healing publish/subscribe client.

A `Client` keeps two independent links to a Redis broker alive: a publisher
that emits a periodic heartbeat and a subscriber that listens on a fixed
channel. Each role reconnects on its own after a connect failure or a
transport error, waiting a fixed delay between failed attempts, and resumes
its work once the link is back.
"""
import asyncio
from enum import Enum

from aioredisc import BrokerError, ConnectionState, NotConnectedError, RedisConnection, ReplyError, log
from config import Config


class Timer:
    """
    A cancellable one-shot delayed call on the running event loop.

    Arming the timer again before it fires cancels the previous arming.
    """

    def __init__(self, name: str = "", verbose: int = 0):
        self.name = name
        self.verbose = verbose
        self._handle: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None

    def __repr__(self) -> str:
        return f"Timer(name='{self.name}', pending={self.pending})"

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule_after(self, delay: float, callback):
        """
        Arms the timer.

        Args:
            delay: Seconds to wait before calling `callback`.
            callback: Called once with no arguments. A returned coroutine is
                      run as a task.
        """
        self.cancel()
        if self.verbose:
            log(f"{self.name}: armed for {delay}s")
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(delay, self._fire, callback)

    def cancel(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self, callback):
        self._handle = None
        result = callback()
        if asyncio.iscoroutine(result):
            self._task = asyncio.create_task(result)
            self._task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        if self._task is task:
            self._task = None
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log(f"{self.name}: timer callback failed: {type(error).__name__}: {error}")


class RoleState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    SUBSCRIBED = "subscribed"
    STOPPED = "stopped"


class ReconnectingRole:
    """
    Connection lifecycle shared by the publisher and subscriber roles.

    Every connect attempt is tagged with a generation number. A connect
    completion whose generation is no longer current belongs to a superseded
    attempt and is ignored.

    Attributes:
        role (str): Role name used for logging and the connection label.
        config (Config): Broker address, channel and retry delay.
        connection (RedisConnection): The role's own broker link.
        state (RoleState): Current lifecycle state.
        generation (int): Number of the current connect attempt.
        reconnects (int): Connect attempts triggered by transport errors.
    """

    role = "role"

    def __init__(self, config: Config, connection=None, timer_factory=Timer):
        self.config = config
        self.connection = connection or RedisConnection(
            name=self.role,
            connect_timeout=config.connect_timeout,
            keepalive=config.keepalive,
            verbose=config.verbose,
        )
        self.connection.install_error_handler(self._on_error)
        self.state = RoleState.IDLE
        self.generation = 0
        self.reconnects = 0
        self._connect_timer = timer_factory(f"{self.role}-connect", verbose=config.verbose)
        self._tasks = set()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(state={self.state.value}, generation={self.generation})"

    def start(self):
        if self.state is not RoleState.IDLE:
            log(f"{self.role}: start ignored, already {self.state.value}")
            return
        self._reconnect()

    async def stop(self):
        """Cancels timers and in-flight attempts and closes the link."""
        self.state = RoleState.STOPPED
        self.generation += 1
        self._connect_timer.cancel()
        self._cancel_operation()

        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        await self.connection.disconnect()
        log(f"{self.role}: stopped")

    async def connect(self):
        """Runs one connect attempt and acts on its outcome."""
        self.generation += 1
        generation = self.generation
        self.state = RoleState.CONNECTING
        log(f"{self.role}: connecting to {self.config.address}:{self.config.port}")

        if self.connection.state is not ConnectionState.DISCONNECTED:
            log(f"{self.role}: dropping stale connection")
            await self.connection.disconnect()
            self._cancel_operation()

        try:
            ok = await self.connection.connect(self.config.address, self.config.port)
        except BrokerError as e:
            ok = False
            error = str(e)
        else:
            error = self.connection.get_last_error()

        if generation != self.generation:
            if self.config.verbose:
                log(f"{self.role}: ignoring stale connect result (attempt {generation})")
            return

        if not ok:
            log(f"{self.role}: can't connect to redis: {error}")
            self._schedule_retry()
            return

        log(f"{self.role}: connected")
        await self._on_connected()

    def _reconnect(self):
        self._spawn(self.connect())

    def _schedule_retry(self):
        if self.config.verbose:
            log(f"{self.role}: retrying in {self.config.retry_delay}s")
        self._connect_timer.schedule_after(self.config.retry_delay, self._reconnect)

    def _on_error(self, error: str):
        if self.state is RoleState.STOPPED:
            return
        log(f"{self.role}: connection lost: {error}")
        self.reconnects += 1
        self._connect_timer.cancel()
        self._cancel_operation()
        self.state = RoleState.CONNECTING
        self._reconnect()

    async def _on_connected(self):
        raise NotImplementedError

    def _cancel_operation(self):
        pass

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log(f"{self.role}: background task failed: {type(error).__name__}: {error}")

    def get_stats(self) -> dict:
        stats = self.connection.stats.get_stats()
        stats["state"] = self.state.value
        stats["reconnects"] = self.reconnects
        return stats


class ReconnectingPublisher(ReconnectingRole):
    """
    Publisher role: once connected, publishes a heartbeat every `retry_delay`.

    The heartbeat counter lives for the lifetime of the object and is not
    reset by reconnects.
    """

    role = "publisher"

    def __init__(self, config: Config, connection=None, timer_factory=Timer):
        super().__init__(config, connection, timer_factory)
        self.counter = 0
        self._publish_timer = timer_factory(f"{self.role}-heartbeat", verbose=config.verbose)

    async def publish(self, message: str | bytes) -> int:
        return await self.connection.publish(self.config.channel, message)

    async def _on_connected(self):
        self.state = RoleState.ACTIVE
        self._publish_timer.cancel()
        self._publish_timer.schedule_after(self.config.retry_delay, self._on_publish_timeout)

    def _cancel_operation(self):
        self._publish_timer.cancel()

    def _on_publish_timeout(self):
        if self.connection.is_connected():
            message = self.config.heartbeat_format.format(counter=self.counter)
            self.counter += 1
            self._spawn(self._send_heartbeat(message))
        # Keeps ticking through a connected-state flicker; the error handler redirects.
        self._publish_timer.schedule_after(self.config.retry_delay, self._on_publish_timeout)

    async def _send_heartbeat(self, message: str):
        log(f"pub {message}")
        try:
            await self.publish(message)
        except BrokerError as e:
            log(f"{self.role}: heartbeat '{message}' not sent: {e}")


class ReconnectingSubscriber(ReconnectingRole):
    """
    Subscriber role: once connected, subscribes to the configured channel.

    Attributes:
        on_message (Optional[Callable]): Consumer for decoded messages.
                                         Signature: `def on_message(text)` or
                                         `async def on_message(text)`.
                                         Messages are logged when unset.
        messages_received (int): Messages delivered since creation.
    """

    role = "subscriber"

    def __init__(self, config: Config, connection=None, timer_factory=Timer, on_message=None):
        super().__init__(config, connection, timer_factory)
        self.on_message = on_message
        self.messages_received = 0

    async def _on_connected(self):
        generation = self.generation
        try:
            await self.connection.subscribe(self.config.channel, self._on_message)
        except NotConnectedError as e:
            # The error handler has already started a new attempt.
            log(f"{self.role}: link lost while subscribing: {e}")
            return
        except ReplyError as e:
            log(f"{self.role}: subscribe to {self.config.channel} rejected: {e}")
            if generation == self.generation:
                self._schedule_retry()
            return

        if generation != self.generation:
            return
        self.state = RoleState.SUBSCRIBED
        log(f"{self.role}: subscribed to {self.config.channel}")

    def _on_message(self, payload: bytes):
        text = payload.decode("utf-8", errors="replace")
        self.messages_received += 1
        if self.on_message is None:
            log(f"onMessage: {text}")
            return None
        return self.on_message(text)


class Client:
    """
    Composes one publisher and one subscriber sharing a broker address.

    The two roles never observe each other: a broker outage is detected and
    recovered by each of them separately.
    """

    def __init__(self, config: Config | None = None, publisher=None, subscriber=None, on_message=None):
        self.config = config or Config()
        self.publisher = publisher or ReconnectingPublisher(self.config)
        self.subscriber = subscriber or ReconnectingSubscriber(self.config, on_message=on_message)

    def __repr__(self) -> str:
        return f"Client(address='{self.config.address}', port={self.config.port}, channel='{self.config.channel}')"

    def start(self):
        self.publisher.start()
        self.subscriber.start()

    async def stop(self):
        await asyncio.gather(self.publisher.stop(), self.subscriber.stop())

    async def publish(self, message: str | bytes) -> int:
        """
        Publishes a message on the configured channel through the publisher link.

        Raises:
            NotConnectedError: If the publisher link is down.
        """
        return await self.publisher.publish(message)

    def get_stats(self) -> dict:
        return {
            "publisher": self.publisher.get_stats(),
            "subscriber": self.subscriber.get_stats(),
        }

    async def __aenter__(self) -> "Client":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()
