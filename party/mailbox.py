"""Single-consumer work queue for one watch party.

Transport callbacks, adapter events and timers never touch protocol state
directly; they post a handler onto the mailbox and the consumer task runs the
handlers one at a time, in posting order.
"""
import asyncio
from typing import Any, Callable, Optional, Set

from logging_config import get_logger

logger = get_logger(__name__)


class Timer:
    """Handle for a delayed or repeating post onto a mailbox."""

    def __init__(self, mailbox: "Mailbox", delay: float, handler: Callable, args: tuple, repeat: bool):
        self._mailbox = mailbox
        self._delay = delay
        self._handler = handler
        self._args = args
        self._repeat = repeat
        self._handle: Optional[asyncio.TimerHandle] = None
        self.cancelled = False

    def _arm(self):
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self._delay, self._fire)

    def _fire(self):
        if self.cancelled:
            return
        if self._repeat:
            self._arm()
        else:
            self._mailbox._timers.discard(self)
        self._mailbox.post(self._handler, *self._args)

    def cancel(self):
        self.cancelled = True
        if self._handle:
            self._handle.cancel()
            self._handle = None
        self._mailbox._timers.discard(self)

    @property
    def active(self) -> bool:
        return not self.cancelled and (self._repeat or self in self._mailbox._timers)


class Mailbox:
    def __init__(self, name: str = "party"):
        self.name = name
        self._queue: "asyncio.Queue[tuple]" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._timers: Set[Timer] = set()
        self._closed = False

    def post(self, handler: Callable, *args: Any):
        if self._closed:
            logger.debug(f"Mailbox {self.name} closed, dropping {getattr(handler, '__name__', handler)}")
            return
        self._queue.put_nowait((handler, args))

    def _dispatch(self, handler: Callable, args: tuple):
        try:
            handler(*args)
        except Exception as e:
            logger.error(f"Error in {self.name} handler {getattr(handler, '__name__', handler)}: {e}", exc_info=True)

    def drain(self) -> int:
        """Run every queued handler now, including ones they post. Returns the count."""
        processed = 0
        while True:
            try:
                handler, args = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return processed
            self._dispatch(handler, args)
            processed += 1

    async def run(self):
        logger.debug(f"Mailbox {self.name} consumer started")
        try:
            while True:
                handler, args = await self._queue.get()
                self._dispatch(handler, args)
        except asyncio.CancelledError:
            logger.debug(f"Mailbox {self.name} consumer cancelled")
            raise

    def start(self):
        if self._task and not self._task.done():
            return
        self._closed = False
        self._task = asyncio.get_running_loop().create_task(self.run())

    async def stop(self):
        self._closed = True
        self.cancel_timers()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def call_later(self, delay_ms: float, handler: Callable, *args: Any) -> Timer:
        timer = Timer(self, delay_ms / 1000.0, handler, args, repeat=False)
        self._timers.add(timer)
        timer._arm()
        return timer

    def call_every(self, interval_ms: float, handler: Callable, *args: Any) -> Timer:
        timer = Timer(self, interval_ms / 1000.0, handler, args, repeat=True)
        self._timers.add(timer)
        timer._arm()
        return timer

    def cancel_timers(self):
        for timer in list(self._timers):
            timer.cancel()
        self._timers.clear()

    @property
    def pending(self) -> int:
        return self._queue.qsize()
