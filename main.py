"""
Runs the self-healing publish/subscribe client against a Redis broker.

The publisher sends a heartbeat on the configured channel every retry
interval and the subscriber prints what it receives. Both keep reconnecting
while the broker is unavailable. Stops gracefully on Ctrl+C.

Usage: python main.py [config.json]
"""

import asyncio
import signal
import sys
from time import time

from rich.table import Table

from aioredisc import console, log
from config import Config
from pubsub_client import Client

# Flag to indicate shutdown
shutdown_requested = False

boot_time = time()


def get_uptime() -> str:
    uptime = int(time() - boot_time)
    minutes = uptime // 60
    hours = minutes // 60
    days = hours // 24
    return f"{int(days)}d {int(hours % 24)}h {int(minutes % 60)}m {int(uptime % 60)}s"


def on_message(text: str):
    log(f"onMessage: {text}")


def signal_handler():
    global shutdown_requested
    log("Shutdown requested, stopping client...")
    shutdown_requested = True


async def register_signal_handlers():
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # For systems where add_signal_handler is not implemented (e.g., Windows)
            log("Warning: Signal handlers not fully supported on this platform.")


def print_stats_table(stats: dict):
    table = Table(title=f"Client Stats (uptime {get_uptime()})")
    table.add_column("Metric")
    table.add_column("Publisher", justify="right")
    table.add_column("Subscriber", justify="right")
    for key in stats["publisher"]:
        table.add_row(key, str(stats["publisher"][key]), str(stats["subscriber"].get(key, "")))
    console.print(table)


async def main(config_path: str | None = None):
    log("Starting pub/sub client")
    await register_signal_handlers()
    config = Config().load(config_path)

    stats_every_sec = 10
    client = Client(config, on_message=on_message)
    log(f"Running {client}... (Press Ctrl+C to exit)")
    client.start()
    try:
        ticks = 0
        while not shutdown_requested:
            await asyncio.sleep(1)
            ticks += 1
            if ticks % stats_every_sec == 0:
                print_stats_table(client.get_stats())
    except KeyboardInterrupt:
        log("KeyboardInterrupt received, stopping.")
    finally:
        await client.stop()
    log("done")


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else None))
