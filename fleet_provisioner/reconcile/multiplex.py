"""
Result streams between worker threads.

A ``Channel`` is a bounded queue written by one producer and read by one
consumer. Every blocking operation on it polls the shared cancellation event,
so an abandoned channel never pins a thread forever.
"""
from concurrent.futures import ThreadPoolExecutor
import queue
import threading
from typing import Any, Callable, Generic, Iterable, Iterator, TypeVar

from loguru import logger

T = TypeVar('T')
I = TypeVar('I')

POLL_INTERVAL = 0.05

_CLOSED = object()


class _Failure:
    def __init__(self, exc: BaseException):
        self.exc = exc


class Channel(Generic[T]):
    def __init__(self, cancel: threading.Event, maxsize: int = 1):
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)
        self._cancel = cancel

    @property
    def cancel(self) -> threading.Event:
        return self._cancel

    def _put(self, item: Any) -> bool:
        while not self._cancel.is_set():
            try:
                self._queue.put(item, timeout=POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    def send(self, item: T) -> bool:
        """Returns False when the channel was cancelled before the item could be delivered."""
        return self._put(item)

    def fail(self, exc: BaseException) -> bool:
        """Deliver an exception, re-raised on the consumer side."""
        return self._put(_Failure(exc))

    def close(self):
        self._put(_CLOSED)

    def _items(self) -> Iterator[Any]:
        while not self._cancel.is_set():
            try:
                item = self._queue.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                continue
            if item is _CLOSED:
                return
            yield item

    def __iter__(self) -> Iterator[T]:
        for item in self._items():
            if isinstance(item, _Failure):
                raise item.exc
            yield item


def multiplex(cancel: threading.Event, *channels: Channel[T]) -> Channel[T]:
    """
    Merge ``channels`` into one.

    The merged channel is closed once every input has been drained and closed,
    or as soon as ``cancel`` is set. Items of one input keep their order, there
    is no ordering across inputs.
    """
    out: Channel[T] = Channel(cancel)

    def _forward(ch: Channel[T]):
        for item in ch._items():
            if not out._put(item):
                return

    forwarders = [threading.Thread(target=_forward, args=(ch,), daemon=True) for ch in channels]
    for t in forwarders:
        t.start()

    def _join():
        for t in forwarders:
            t.join()
        out.close()

    threading.Thread(target=_join, daemon=True).start()
    return out


def produce(cancel: threading.Event, work: Callable[[Channel[T]], None], *, name: str = "producer") -> Channel[T]:
    """Run ``work`` on its own thread, handing it the channel it writes to."""
    ch: Channel[T] = Channel(cancel)

    def _run():
        try:
            work(ch)
        except Exception as exc:
            logger.error(f"{name} failed: {exc}")
            ch.fail(exc)
        finally:
            ch.close()

    threading.Thread(target=_run, name=name, daemon=True).start()
    return ch


def fan_out(cancel: threading.Event, items: Iterable[I], work: Callable[[I], T], *, max_workers: int = 16, name: str = "worker") -> Channel[T]:
    """
    Apply ``work`` to every item on a bounded pool and stream the results as they complete.

    ``work`` is expected to turn its own failures into a result value; an
    exception escaping it is re-raised on the consumer side.
    """
    items = list(items)
    channels: list = [Channel(cancel) for _ in items]

    def _run_into(ch: Channel[T], item: I):
        try:
            if cancel.is_set():
                return
            ch.send(work(item))
        except Exception as exc:
            logger.error(f"{name} failed: {exc}")
            ch.fail(exc)
        finally:
            ch.close()

    if items:
        executor = ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(items))), thread_name_prefix=name)
        for ch, item in zip(channels, items):
            executor.submit(_run_into, ch, item)
        # queued tasks keep running, the merged channel is the join point
        executor.shutdown(wait=False)

    return multiplex(cancel, *channels)
