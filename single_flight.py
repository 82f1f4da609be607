import logging
import threading
from concurrent.futures import Future, TimeoutError as FutureTimeoutError

from errors import TransportError

logger = logging.getLogger(__name__)


class SingleFlight:
    """
    Run at most one refresh at a time.

    The first caller to find the cached artifact missing becomes the leader
    and runs ``refresh``; callers arriving while it runs wait on the leader's
    future and receive the same result or the same exception. ``refresh``
    must publish the new artifact before it returns, because the in-flight
    marker is cleared right after.
    """

    def __init__(self, name):
        self.name = name
        self._lock = threading.Lock()
        self._inflight = None

    @property
    def in_flight(self):
        return self._inflight is not None

    def run(self, refresh, current=None, timeout=None):
        """
        Return ``current()`` if it yields a usable artifact, otherwise the
        result of the single in-flight ``refresh()``.

        ``timeout`` bounds how long a waiting caller blocks. Giving up only
        abandons that caller's wait; the refresh keeps running for the others.
        The leader is not interrupted: ``refresh`` itself must be bounded, as
        the handshake and digest fetch are by ``Config.HANDSHAKE_TIMEOUT``.
        """
        with self._lock:
            if current is not None:
                artifact = current()
                if artifact is not None:
                    return artifact
            future = self._inflight
            leader = future is None
            if leader:
                future = Future()
                self._inflight = future

        if not leader:
            logger.debug(f"Waiting for in-flight {self.name} refresh")
            return self._wait(future, timeout)

        try:
            result = refresh()
        except BaseException as exc:
            self._clear(future)
            future.set_exception(exc)
            raise
        self._clear(future)
        future.set_result(result)
        return result

    def _clear(self, future):
        with self._lock:
            if self._inflight is future:
                self._inflight = None

    def _wait(self, future, timeout):
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as exc:
            raise TransportError(
                f"Timed out after {timeout}s waiting for {self.name} refresh"
            ) from exc
