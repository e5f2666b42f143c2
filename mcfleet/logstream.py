from __future__ import annotations

from collections import deque
from threading import Condition, Event, Lock, Thread, current_thread
from typing import Callable, Iterable

from .db import log_event


class LogTail:
    """Live follow of one container's output.

    A reader thread drains the Docker stream into a bounded buffer; a
    dispatcher thread hands lines to ``on_line`` in arrival order. When the
    consumer falls behind the oldest buffered lines are dropped, so the
    Docker stream is never throttled.

    After cancel() returns, on_line is not called again.
    """

    def __init__(
        self,
        workload_id: str,
        stream: Iterable[bytes],
        on_line: Callable[[str], None],
        max_buffer: int = 1000,
        on_close: Callable[[LogTail], None] | None = None,
    ):
        self.workload_id = workload_id
        self._stream = stream
        self._on_line = on_line
        self._on_close = on_close
        self._buffer: deque[str] = deque(maxlen=max(1, int(max_buffer)))
        self._cond = Condition()
        self._deliver_lock = Lock()
        self._cancelled = Event()
        self._reader_done = False
        self.dropped = 0
        self._reader = Thread(target=self._read, name=f"logs-read-{workload_id}", daemon=True)
        self._dispatcher = Thread(target=self._dispatch, name=f"logs-send-{workload_id}", daemon=True)

    @property
    def active(self) -> bool:
        return not self._cancelled.is_set() and self._dispatcher.is_alive()

    def start(self) -> LogTail:
        self._reader.start()
        self._dispatcher.start()
        return self

    def cancel(self) -> None:
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        close = getattr(self._stream, "close", None)
        if callable(close):
            try:
                close()
            except Exception as e:
                log_event("WARN", f"Closing log stream failed: {type(e).__name__}: {e}", workload_id=self.workload_id)
        with self._cond:
            self._cond.notify_all()
        # Wait out a delivery already in progress, unless we are that delivery.
        if current_thread() is not self._dispatcher:
            with self._deliver_lock:
                pass

    def join(self, timeout: float | None = None) -> None:
        self._dispatcher.join(timeout)

    def _push(self, line: str) -> None:
        with self._cond:
            if len(self._buffer) == self._buffer.maxlen:
                self.dropped += 1
            self._buffer.append(line)
            self._cond.notify()

    def _read(self) -> None:
        pending = b""
        try:
            for chunk in self._stream:
                if self._cancelled.is_set():
                    break
                if isinstance(chunk, str):
                    chunk = chunk.encode("utf-8")
                pending += chunk
                *lines, pending = pending.split(b"\n")
                for raw in lines:
                    line = raw.decode("utf-8", errors="replace").rstrip("\r")
                    if line.strip():
                        self._push(line)
            if pending.strip() and not self._cancelled.is_set():
                self._push(pending.decode("utf-8", errors="replace").rstrip("\r"))
        except Exception as e:
            # Closing the stream from cancel() interrupts the read; only report real failures.
            if not self._cancelled.is_set():
                log_event("WARN", f"Log stream ended: {type(e).__name__}: {e}", workload_id=self.workload_id)
        finally:
            with self._cond:
                self._reader_done = True
                self._cond.notify_all()

    def _dispatch(self) -> None:
        try:
            while True:
                with self._cond:
                    while not self._buffer and not self._reader_done and not self._cancelled.is_set():
                        self._cond.wait()
                    if self._cancelled.is_set() or not self._buffer:
                        return
                    line = self._buffer.popleft()
                with self._deliver_lock:
                    if self._cancelled.is_set():
                        return
                    try:
                        self._on_line(line)
                    except Exception as e:
                        log_event("ERROR", f"Log consumer failed: {type(e).__name__}: {e}", workload_id=self.workload_id)
        finally:
            if self._on_close is not None:
                self._on_close(self)
