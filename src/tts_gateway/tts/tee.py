"""
Stream Splitter.

One provider response has two consumers: the HTTP caller, who should
hear audio as soon as it arrives, and the persistence worker, which
needs every byte. A pump thread reads the source exactly once and puts
each chunk on two queues.

    source ──pump──┬── primary queue   -> caller response
                   └── secondary queue -> persistence worker

The branches are independent. A slow caller does not slow persistence,
and if the caller goes away the primary branch is detached: the pump
stops queueing for it and keeps feeding the secondary branch to the
end. An exception from the source is re-raised in both branches.

Usage:
    tee = StreamTee(audio_stream)
    worker.submit(job_with(tee.secondary()))
    return StreamingResponse(tee.primary(), media_type="audio/mpeg")
"""
from __future__ import annotations

import queue
import threading
from typing import Iterable, Iterator, Optional

from tts_gateway.core.logging import debug, get_logger, warn

_LOG = get_logger("tts-gateway.tee")

_END = object()


class _Failure:
    __slots__ = ("exc",)

    def __init__(self, exc: BaseException):
        self.exc = exc


class StreamTee:
    def __init__(self, source: Iterable[bytes], name: str = "tee"):
        self._source = source
        self._primary: "queue.Queue[object]" = queue.Queue()
        self._secondary: "queue.Queue[object]" = queue.Queue()
        self._primary_detached = threading.Event()
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._started = False
        self._thread = threading.Thread(target=self._pump, name=f"{name}-pump", daemon=True)
        self.bytes_pumped = 0
        self.error: Optional[BaseException] = None

    def start(self) -> None:
        with self._lock:
            if not self._started:
                self._started = True
                self._thread.start()

    def _pump(self) -> None:
        try:
            for chunk in self._source:
                if not chunk:
                    continue
                self.bytes_pumped += len(chunk)
                if not self._primary_detached.is_set():
                    self._primary.put(chunk)
                self._secondary.put(chunk)
        except Exception as e:
            self.error = e
            warn(_LOG, "tee_source_failed", error=str(e), bytes=self.bytes_pumped)
            failure = _Failure(e)
            self._primary.put(failure)
            self._secondary.put(failure)
        else:
            debug(_LOG, "tee_source_done", bytes=self.bytes_pumped)
            self._primary.put(_END)
            self._secondary.put(_END)
        finally:
            self._done.set()

    def detach_primary(self) -> None:
        """Stop feeding the caller branch; the secondary branch continues."""
        if not self._primary_detached.is_set():
            self._primary_detached.set()
            debug(_LOG, "tee_primary_detached", bytes=self.bytes_pumped)

    @property
    def primary_detached(self) -> bool:
        return self._primary_detached.is_set()

    def _drain(self, q: "queue.Queue[object]") -> Iterator[bytes]:
        self.start()
        while True:
            item = q.get()
            if item is _END:
                return
            if isinstance(item, _Failure):
                raise item.exc
            yield item  # type: ignore[misc]

    def primary(self) -> Iterator[bytes]:
        finished = False
        try:
            yield from self._drain(self._primary)
            finished = True
        finally:
            if not finished:
                self.detach_primary()

    def secondary(self) -> Iterator[bytes]:
        return self._drain(self._secondary)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the source is exhausted. Returns False on timeout."""
        return self._done.wait(timeout)
