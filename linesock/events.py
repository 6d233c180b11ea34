"""
A small event emitter keyed by an Enum of event kinds.

Each emitter accepts only the members of the enum it was built with, so a
Listener can never emit a connection event and vice versa.

- Callbacks can be plain functions or coroutine functions. Coroutines are scheduled with
  asyncio.create_task and kept alive until they finish.
- Exceptions raised by a callback are logged and never leak into the accept or read loop.
- An "error" event nobody listens to is logged, since there is nowhere else for it to go.
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Type, TypeVar


logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)
Callback = Callable[..., Any]


@dataclass(frozen=True, eq=False)
class Subscription:
    event: Enum
    callback: Callback
    once: bool = False


class EventEmitter(Generic[E]):

    def __init__(self, events: Type[E]):
        self.events = events
        self._subs: Dict[E, List[Subscription]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    def on(self, event: E, callback: Callback) -> Subscription:
        return self._add(event, callback, once=False)

    def once(self, event: E, callback: Callback) -> Subscription:
        return self._add(event, callback, once=True)

    def off(self, event: E, callback: Callback | Subscription) -> None:
        """
        Remove the first subscription for `event` matching the callback (or the subscription itself).
        """
        items = self._subs.get(event)
        if not items:
            return
        for i, sub in enumerate(items):
            if sub is callback or sub.callback == callback:
                del items[i]
                break
        if not items:
            self._subs.pop(event, None)

    def remove_all_listeners(self, event: Optional[E] = None) -> None:
        if event is None:
            self._subs.clear()
        else:
            self._subs.pop(event, None)

    def listener_count(self, event: E) -> int:
        return len(self._subs.get(event, ()))

    def emit(self, event: E, *args: Any) -> bool:
        self._check(event)
        subs = list(self._subs.get(event, ()))
        if not subs:
            if event.value == "error":
                exc = args[0] if args else None
                logger.error("Unhandled error event on %r", self, exc_info=exc if isinstance(exc, BaseException) else None)
            return False

        for sub in subs:
            if sub.once:
                # remove first so a re-entrant emit cannot fire it twice
                self.off(event, sub)
            self._invoke(sub.callback, args)
        return True

    def _add(self, event: E, callback: Callback, once: bool) -> Subscription:
        self._check(event)
        sub = Subscription(event=event, callback=callback, once=once)
        self._subs.setdefault(event, []).append(sub)
        return sub

    def _check(self, event: Any) -> None:
        if not isinstance(event, self.events):
            raise TypeError(f"{type(self).__name__} does not emit {event!r}")

    def _invoke(self, callback: Callback, args: tuple) -> None:
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(self._await_and_log(result, callback))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        except Exception:
            logger.exception("Error in event handler %r", callback)

    async def _await_and_log(self, aw: Awaitable[Any], callback: Callback) -> None:
        try:
            await aw
        except Exception:
            logger.exception("Async event handler %r failed", callback)
