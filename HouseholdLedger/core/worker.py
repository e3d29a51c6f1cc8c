"""Background execution of blocking remote calls.

The sync engine never blocks the event loop: every remote call is submitted to
a task runner which reports the outcome back on the main thread. The default
:class:`ThreadedRunner` runs each call on an :class:`AsyncWorker` thread.
"""
import logging
import threading
from typing import Any, Callable, Optional, Set

from PySide6 import QtCore

ResultCallback = Callable[[Any], None]
ErrorCallback = Callable[[BaseException], None]


class AsyncWorker(QtCore.QThread):
    """
    Worker thread running a single blocking function.

    The outcome is kept on the worker and also emitted through the signals.

    Signals:
        resultReady (object): Emitted with the function's result on success.
        errorOccurred (object): Emitted with the exception instance on failure.
    """
    resultReady = QtCore.Signal(object)
    errorOccurred = QtCore.Signal(object)

    def __init__(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        super().__init__()
        self.func = func
        self.args = args
        self.kwargs = kwargs

        self.result: Any = None
        self.error: Optional[BaseException] = None

        self.on_result: Optional[ResultCallback] = None
        self.on_error: Optional[ErrorCallback] = None

    def run(self) -> None:
        logging.debug(f'[Thread-{threading.get_ident()}] AsyncWorker.run: {getattr(self.func, "__name__", self.func)}')
        try:
            self.result = self.func(*self.args, **self.kwargs)
        except Exception as ex:
            self.error = ex
            self.errorOccurred.emit(ex)
            return
        self.resultReady.emit(self.result)


class TaskRunner:
    """Runs a blocking function and reports the outcome on the main thread."""

    def submit(self, func: Callable[[], Any], on_result: ResultCallback, on_error: ErrorCallback) -> None:
        raise NotImplementedError


class ThreadedRunner(QtCore.QObject, TaskRunner):
    """Task runner backed by :class:`AsyncWorker` threads.

    Callbacks are invoked from :meth:`_on_finished`, a slot of this object, so
    they always run on the thread the runner lives in.
    """

    def __init__(self, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)
        self._workers: Set[AsyncWorker] = set()

    def submit(self, func: Callable[[], Any], on_result: ResultCallback, on_error: ErrorCallback) -> None:
        worker = AsyncWorker(func)
        worker.on_result = on_result
        worker.on_error = on_error
        worker.finished.connect(self._on_finished, QtCore.Qt.QueuedConnection)
        self._workers.add(worker)
        worker.start()

    @QtCore.Slot()
    def _on_finished(self) -> None:
        worker = self.sender()
        if not isinstance(worker, AsyncWorker):
            return
        self._workers.discard(worker)

        try:
            if worker.error is not None:
                if worker.on_error:
                    worker.on_error(worker.error)
            elif worker.on_result:
                worker.on_result(worker.result)
        finally:
            worker.deleteLater()

    def pending(self) -> int:
        """Number of workers that have not reported back yet."""
        return len(self._workers)

    def wait(self, msecs: int = 30000) -> None:
        """Block until every running worker thread has finished."""
        for worker in list(self._workers):
            worker.wait(msecs)
