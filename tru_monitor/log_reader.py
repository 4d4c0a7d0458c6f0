"""
Log sources for the node monitor.

Both sources are async iterators of lines. When nothing arrives within the
read timeout they yield None, which lets the parser flush a pending
multi-line entry and lets callers notice cancellation promptly.
"""

import asyncio
import logging
import os
import threading
from concurrent.futures import Executor
from typing import AsyncIterator, Callable, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .config import (LOG_READ_TIMEOUT_SECONDS, LOG_READER_BACKOFF_SECONDS, LOG_READER_MAX_BACKOFF_SECONDS,
                     LOG_READER_MAX_RECONNECTS)

log = logging.getLogger("TruMonitor.LogReader")


class _WakeOnChange(FileSystemEventHandler):
    def __init__(self, wake: threading.Event):
        self._wake = wake

    def on_any_event(self, event):
        self._wake.set()


class FileTailer:
    """
    Follows a worker log file from a worker thread and hands each line to the
    event loop. A watchdog observer on the parent directory wakes the reader
    early; otherwise it re-checks the file every poll_interval seconds.

    A new inode or a vanished file means the log was rotated and is re-opened
    from its start. A file shorter than the read position was truncated.
    """

    def __init__(self, path: str, deliver: Callable[[str], None], stop_event: threading.Event,
                 from_start: bool = False, poll_interval: float = 5.0):
        self.path = path
        self.deliver = deliver
        self.stop_event = stop_event
        self.poll_interval = poll_interval
        self._skip_existing = not from_start
        self._wake = threading.Event()
        self._file = None
        self._inode = None

    def _open(self) -> bool:
        try:
            self._file = open(self.path, 'r', encoding='utf-8', errors='replace')
        except FileNotFoundError:
            return False
        except OSError as e:
            log.error(f"Cannot open '{self.path}': {e}. Retrying in {self.poll_interval}s.")
            return False
        self._inode = os.fstat(self._file.fileno()).st_ino
        if self._skip_existing:
            self._file.seek(0, os.SEEK_END)
            self._skip_existing = False
        log.info(f"Following '{self.path}' (inode {self._inode}) from offset {self._file.tell()}")
        return True

    def _close(self):
        if self._file is not None:
            self._file.close()
            self._file = None

    def _check_rotation(self):
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            log.warning(f"'{self.path}' is gone, waiting for it to come back.")
            self._close()
            return
        if st.st_ino != self._inode:
            log.warning(f"'{self.path}' was rotated (inode {self._inode} -> {st.st_ino}), re-opening.")
            self._close()
        elif self._file.tell() > st.st_size:
            log.warning(f"'{self.path}' was truncated, reading from the start.")
            self._file.seek(0)

    def _drain(self) -> int:
        count = 0
        for line in iter(self._file.readline, ''):
            self.deliver(line.rstrip('\r\n'))
            count += 1
            if self.stop_event.is_set():
                break
        return count

    def run(self):
        directory = os.path.dirname(os.path.abspath(self.path))
        if not os.path.isdir(directory):
            log.error(f"Directory '{directory}' does not exist, not following '{self.path}'.")
            return

        observer = Observer()
        observer.schedule(_WakeOnChange(self._wake), directory, recursive=False)
        observer.start()
        try:
            while not self.stop_event.is_set():
                if self._file is None and not self._open():
                    self.stop_event.wait(self.poll_interval)
                    continue
                self._wake.clear()
                if self._drain():
                    continue
                self._wake.wait(timeout=self.poll_interval)
                if not self.stop_event.is_set():
                    self._check_rotation()
        finally:
            observer.stop()
            observer.join()
            self._close()
            log.info(f"Stopped following '{self.path}'.")


class FileLogSource:
    def __init__(self, path: str, executor: Optional[Executor] = None,
                 read_timeout: float = LOG_READ_TIMEOUT_SECONDS, from_start: bool = False,
                 poll_interval: float = 5.0):
        self.path = path
        self.executor = executor
        self.read_timeout = read_timeout
        self.from_start = from_start
        self.poll_interval = poll_interval
        self._shutdown_event = threading.Event()

    def stop(self):
        self._shutdown_event.set()

    async def lines(self) -> AsyncIterator[Optional[str]]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        self._shutdown_event.clear()
        tailer = FileTailer(self.path, lambda line: loop.call_soon_threadsafe(queue.put_nowait, line),
                            self._shutdown_event, self.from_start, self.poll_interval)
        reader = loop.run_in_executor(self.executor, tailer.run)
        try:
            while not (reader.done() and queue.empty()):
                try:
                    yield await asyncio.wait_for(queue.get(), timeout=self.read_timeout)
                except asyncio.TimeoutError:
                    yield None
        finally:
            self._shutdown_event.set()
            await asyncio.gather(reader, return_exceptions=True)


class TcpLogSource:
    """Reads newline-delimited log lines from a remote forwarder, reconnecting with backoff."""

    def __init__(self, host: str, port: int, read_timeout: float = LOG_READ_TIMEOUT_SECONDS,
                 max_reconnects: int = LOG_READER_MAX_RECONNECTS, backoff: float = LOG_READER_BACKOFF_SECONDS,
                 max_backoff: float = LOG_READER_MAX_BACKOFF_SECONDS):
        self.host = host
        self.port = port
        self.read_timeout = read_timeout
        self.max_reconnects = max_reconnects
        self.initial_backoff = backoff
        self.max_backoff = max_backoff
        self.status = 'disconnected'

    async def lines(self) -> AsyncIterator[Optional[str]]:
        log.info(f"Starting network log reader for {self.host}:{self.port}")
        backoff = self.initial_backoff
        failures = 0
        while True:
            writer = None
            try:
                reader, writer = await asyncio.wait_for(asyncio.open_connection(self.host, self.port),
                                                        timeout=self.read_timeout)
                self.status = 'connected'
                log.info(f"Connected to remote log source at {self.host}:{self.port}")
                backoff = self.initial_backoff
                failures = 0
                while True:
                    try:
                        line_bytes = await asyncio.wait_for(reader.readline(), timeout=self.read_timeout)
                    except asyncio.TimeoutError:
                        yield None
                        continue
                    if not line_bytes:
                        log.warning(f"Connection to {self.host}:{self.port} closed by remote end.")
                        break
                    yield line_bytes.decode('utf-8', errors='replace').rstrip('\r\n')
            except (ConnectionRefusedError, OSError, asyncio.TimeoutError) as e:
                log.error(f"Cannot connect to {self.host}:{self.port}: {e}.")
            finally:
                self.status = 'disconnected'
                if writer is not None:
                    writer.close()

            failures += 1
            if failures > self.max_reconnects:
                log.error(f"Giving up on {self.host}:{self.port} after {self.max_reconnects} reconnect attempts.")
                return
            log.info(f"Reconnecting to {self.host}:{self.port} in {backoff}s.")
            yield None
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, self.max_backoff)
