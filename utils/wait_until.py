import threading
import time
from typing import Callable, Optional


class WaitUntilTimeoutError(Exception):
    pass


class WaitUntilCancelledError(WaitUntilTimeoutError):
    pass


def wait_until(predicate: Callable[[], bool], timeout: Optional[float] = 60, retry_interval: float = 1, cancel: Optional[threading.Event] = None, first_delay: bool = False):
    """
    Poll ``predicate`` at a fixed interval until it returns True.

    Args:
        predicate: condition to evaluate, exceptions raised by it propagate
        timeout: seconds before giving up, None waits forever
        retry_interval: fixed sleep between two evaluations
        cancel: event aborting the wait as soon as it is set
        first_delay: sleep once before the first evaluation

    Raises:
        WaitUntilTimeoutError: the timeout elapsed
        WaitUntilCancelledError: ``cancel`` was set
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    cancel = cancel or threading.Event()

    if first_delay and cancel.wait(retry_interval):
        raise WaitUntilCancelledError("wait cancelled")

    while True:
        if cancel.is_set():
            raise WaitUntilCancelledError("wait cancelled")
        if predicate():
            return
        if deadline is not None and time.monotonic() + retry_interval > deadline:
            raise WaitUntilTimeoutError(f"condition not met within {timeout}s")
        if cancel.wait(retry_interval):
            raise WaitUntilCancelledError("wait cancelled")
