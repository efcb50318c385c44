from __future__ import annotations

import logging
import os
import queue
import threading
from typing import Optional, Union

from accesslog_exporter.errors import FollowerError

log = logging.getLogger(__name__)

_CLOSED = object()


class Follower:
    """
    Follows one file from a daemon thread and hands out complete lines.

    next() returns the next line, None once the follower was closed and every
    line read before that was handed out, and raises FollowerError when the
    file became unreadable. A file truncated in place is read again from the
    start; renamed or recreated files are not detected.
    """

    def __init__(self, path: str, f, *, poll_interval: float = 0.2, max_queue: int = 10000):
        self.path = path
        self.poll_interval = poll_interval
        self._f = f
        self._q: "queue.Queue[Union[str, FollowerError, object]]" = queue.Queue(maxsize=max_queue)
        self._stop = threading.Event()
        self._finished = threading.Event()
        self._thread = threading.Thread(target=self._worker, name=f"tail:{path}", daemon=True)

    @classmethod
    def open(cls, path: str, *, from_start: bool = False, poll_interval: float = 0.2) -> "Follower":
        try:
            f = open(path, "r", encoding="utf-8", errors="replace")
        except OSError as e:
            raise FollowerError(path, f"cannot open: {e.strerror or e}") from e
        if not from_start:
            f.seek(0, os.SEEK_END)
        follower = cls(path, f, poll_interval=poll_interval)
        follower._thread.start()
        log.info("following %s (from %s)", path, "start" if from_start else "end")
        return follower

    @property
    def closed(self) -> bool:
        return self._stop.is_set()

    def close(self) -> None:
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout)

    def next(self) -> Optional[str]:
        while True:
            try:
                item = self._q.get(timeout=self.poll_interval)
            except queue.Empty:
                if self._finished.is_set() and self._q.empty():
                    return None
                continue
            if item is _CLOSED:
                return None
            if isinstance(item, FollowerError):
                raise item
            return item

    # ----------------------------
    # Reader thread
    # ----------------------------
    def _put(self, item) -> bool:
        while not self._stop.is_set():
            try:
                self._q.put(item, timeout=self.poll_interval)
                return True
            except queue.Full:
                continue
        return False

    def _worker(self) -> None:
        pending = ""
        try:
            while not self._stop.is_set():
                chunk = self._f.readline()
                if not chunk:
                    if os.fstat(self._f.fileno()).st_size < self._f.tell():
                        log.info("%s was truncated, reading from the start", self.path)
                        self._f.seek(0)
                        pending = ""
                        continue
                    self._stop.wait(self.poll_interval)
                    continue
                pending += chunk
                if not pending.endswith("\n"):
                    # partial line, the writer is not done yet
                    continue
                if not self._put(pending.rstrip("\r\n")):
                    break
                pending = ""
        except (OSError, ValueError) as e:
            log.error("reading %s failed: %s", self.path, e)
            self._put(FollowerError(self.path, f"read failed: {e}"))
        finally:
            self._f.close()
            self._finished.set()
            try:
                self._q.put_nowait(_CLOSED)
            except queue.Full:
                pass
