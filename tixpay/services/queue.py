# tixpay/services/queue.py
import logging
import queue
import threading
from typing import Callable, Generic, Optional, TypeVar

from tixpay.errors import FatalReconciliationError
from tixpay.metrics import issuance_failures, issuance_queue_depth

logger = logging.getLogger(__name__)

T = TypeVar("T")

_STOP = object()


class IssuanceQueue(Generic[T]):
    """
    In-process FIFO with exactly one consumer thread.

    Each task runs to completion (or logged failure) before the next one starts, so
    two issuance tasks never overlap inside this process. A failing task is logged
    and dropped; it never stops the drain loop.
    """

    def __init__(self, handler: Callable[[T], None], name: str = "issuance-worker"):
        self._handler = handler
        self._name = name
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._closed = False
        self._stopping = False

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.running:
                if self._closed:
                    logger.warning("%s is still draining after stop; not restarting it", self._name)
                return
            self._closed = False
            self._launch()

    def stop(self, timeout: Optional[float] = 30.0) -> None:
        """Finish queued tasks, then stop the consumer. Later enqueues are refused until start()."""
        with self._lock:
            self._closed = True
            thread = self._thread
            if thread is None:
                return
            if not self._stopping:
                self._queue.put(_STOP)
                self._stopping = True
            thread.join(timeout)
            if thread.is_alive():
                # keep the handle so no second consumer can start while this one drains
                logger.warning("%s still busy after %ss; it will exit once drained", self._name, timeout)
                return
            self._thread = None
            logger.info("%s stopped", self._name)

    def enqueue(self, task: T) -> None:
        with self._lock:
            if self._closed:
                logger.error("%s is stopped; refusing task %r", self._name, task)
                raise RuntimeError(f"{self._name} is stopped")
            self._queue.put(task)
            issuance_queue_depth.inc()
            if not self.running:
                self._launch()

    def _launch(self) -> None:
        # caller holds self._lock
        self._stopping = False
        self._thread = threading.Thread(target=self._drain, name=self._name, daemon=True)
        self._thread.start()
        logger.info("%s started", self._name)

    def join(self) -> None:
        """Block until every enqueued task has been processed."""
        self._queue.join()

    def pending(self) -> int:
        return self._queue.qsize()

    def _drain(self) -> None:
        while True:
            task = self._queue.get()
            try:
                if task is _STOP:
                    return
                issuance_queue_depth.dec()
                self._run(task)
            finally:
                self._queue.task_done()

    def _run(self, task: T) -> None:
        try:
            self._handler(task)
        except FatalReconciliationError as e:
            issuance_failures.labels("reconciliation").inc()
            logger.critical("issuance needs manual reconciliation: %s %s", e.message, e.context)
        except Exception:
            issuance_failures.labels("unexpected").inc()
            logger.exception("issuance task failed: %r", task)
