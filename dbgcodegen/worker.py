"""
dbgcodegen/worker.py
====================

Thread affinity for symbol providers.

Native debug engines usually insist on being called from the thread that
created them.  :class:`ProviderWorker` owns one provider on one dedicated
thread: the provider is built *inside* that thread from a factory, every
query is queued as a request and answered through a
:class:`concurrent.futures.Future`.  Queries made from the worker thread
itself run inline (a provider callback may re-enter the worker).

The worker implements the :class:`~dbgcodegen.provider.SymbolProvider`
protocol, so resolvers running on other threads use it directly.  There
are no retries: a failing query fails the caller.
"""

from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import Future
from typing import Any, Callable, Optional, Sequence, Tuple

from .errors import ProviderQueryError
from .provider import ShapeDescriptor, SymbolProvider, TypeRef

logger = logging.getLogger(__name__)

__all__ = ["ProviderWorker"]

_Request = Tuple[Future, Callable[[SymbolProvider], Any]]


class ProviderWorker:
    def __init__(self, factory: Callable[[], SymbolProvider],
                 name: str = "dbgcodegen-provider") -> None:
        self._factory = factory
        self._requests: "queue.Queue[Optional[_Request]]" = queue.Queue()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._ready: Future = Future()
        self._lock = threading.Lock()
        self._started = False
        self._stopped = False
        self._provider: Optional[SymbolProvider] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> "ProviderWorker":
        """Start the thread and wait until the provider has been built."""
        with self._lock:
            if not self._started:
                self._thread.start()
                self._started = True
        self._ready.result()
        return self

    def stop(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            if not self._started or self._stopped:
                self._stopped = True
                return
            self._stopped = True
            # nothing is queued behind the sentinel
            self._requests.put(None)
        if threading.current_thread() is not self._thread:
            self._thread.join(timeout)

    def __enter__(self) -> "ProviderWorker":
        return self.start()

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()

    @property
    def running(self) -> bool:
        return self._started and not self._stopped and self._thread.is_alive()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def submit(self, fn: Callable[[SymbolProvider], Any]) -> Future:
        """Run ``fn(provider)`` on the worker thread."""
        if threading.current_thread() is self._thread:
            future: Future = Future()
            try:
                future.set_result(fn(self._provider))
            except BaseException as exc:
                future.set_exception(exc)
            return future
        future = Future()
        with self._lock:
            if not self.running:
                raise ProviderQueryError("provider worker is not running")
            self._requests.put((future, fn))
        return future

    def call(self, method: str, *args: Any) -> Any:
        return self.submit(lambda provider: getattr(provider, method)(*args)).result()

    # -- SymbolProvider ------------------------------------------------

    def lookup_type(self, module: str, name_or_offset: TypeRef) -> Optional[ShapeDescriptor]:
        return self.call("lookup_type", module, name_or_offset)

    def list_types(self, module: str) -> Sequence[str]:
        return self.call("list_types", module)

    def pointer_size(self, module: str) -> int:
        return self.call("pointer_size", module)

    # ------------------------------------------------------------------
    # Thread body
    # ------------------------------------------------------------------

    def _run(self) -> None:
        try:
            provider = self._factory()
        except BaseException as exc:
            logger.error("provider construction failed: %s", exc)
            with self._lock:
                self._stopped = True
            self._ready.set_exception(exc)
            return
        self._provider = provider
        self._ready.set_result(provider)
        logger.debug("provider worker %s started", self._thread.name)

        while True:
            item = self._requests.get()
            if item is None:
                break
            future, fn = item
            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(fn(provider))
            except BaseException as exc:
                future.set_exception(exc)

        while True:
            try:
                item = self._requests.get_nowait()
            except queue.Empty:
                break
            if item is not None:
                item[0].set_exception(ProviderQueryError("provider worker stopped"))

        close = getattr(provider, "close", None)
        if callable(close):
            close()
        logger.debug("provider worker %s stopped", self._thread.name)
