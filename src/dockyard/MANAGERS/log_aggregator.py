"""
Log streaming and aggregation for services.
"""
import codecs
import queue
import threading
from typing import Callable, Dict, Iterable, Iterator, Optional, Tuple

from ..errors import DockyardError
from ..MODELS.runtime_state import RuntimeHandle
from ..RUNTIME.base import ContainerRuntime

_END = object()
_POLL = 0.1


def split_lines(chunks: Iterable[bytes]) -> Iterator[str]:
    """
    Decodes byte chunks and yields complete lines without their line ending.
    A trailing partial line is yielded at the end.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending = ""
    for chunk in chunks:
        pending += decoder.decode(chunk)
        *lines, pending = pending.split("\n")
        for line in lines:
            yield line.rstrip("\r")
    pending += decoder.decode(b"", final=True)
    if pending:
        yield pending.rstrip("\r")


class LogStream:
    """
    Lazy sequence of the log lines of one container.

    Without ``follow`` every iteration re-reads the log from the start and
    ends at its current end. With ``follow`` the stream can be iterated once
    and only ends on cancellation or when the container is removed.
    """
    def __init__(self,
                 runtime: ContainerRuntime,
                 handle: Optional[RuntimeHandle],
                 follow: bool = False,
                 cancel: Optional[threading.Event] = None):
        self.runtime = runtime
        self.handle = handle
        self.follow = follow
        self._cancel = cancel or threading.Event()
        self._consumed = False

    def __iter__(self) -> Iterator[str]:
        if not self.follow:
            return self._read()
        if self._consumed:
            raise RuntimeError("a followed log stream cannot be restarted")
        self._consumed = True
        return self._follow()

    def cancel(self):
        """Ends a followed stream at the next poll."""
        self._cancel.set()

    def _read(self) -> Iterator[str]:
        if self.handle is None:
            return
        yield from split_lines(self.runtime.stream_logs(self.handle, follow=False))

    def _follow(self) -> Iterator[str]:
        if self.handle is None:
            return
        chunks: "queue.Queue" = queue.Queue(maxsize=1024)

        def put(item) -> bool:
            while not self._cancel.is_set():
                try:
                    chunks.put(item, timeout=_POLL)
                    return True
                except queue.Full:
                    continue
            return False

        def pump():
            """
            Moves chunks from the blocking runtime iterator to the queue.
            """
            try:
                for chunk in self.runtime.stream_logs(self.handle, follow=True):
                    if not put(chunk):
                        return
            except Exception as e:
                put(e)
            finally:
                put(_END)

        threading.Thread(target=pump, name=f"logs-{self.handle.name}", daemon=True).start()

        def drain() -> Iterator[bytes]:
            while not self._cancel.is_set():
                try:
                    item = chunks.get(timeout=_POLL)
                except queue.Empty:
                    continue
                if item is _END:
                    return
                if isinstance(item, Exception):
                    raise item
                yield item

        yield from split_lines(drain())


class LogAggregator:
    """
    Aggregates the log streams of several services into one prefixed output.
    """
    def __init__(self, streams: Dict[str, LogStream]):
        """
        Initializes the log aggregator.

        :param streams: Log stream of every service, keyed by service name.
        """
        self.streams = streams
        self._cancel = threading.Event()

    def merge(self) -> Iterator[Tuple[str, str]]:
        """
        Yields ``(service, line)`` pairs as they arrive, until every stream
        ended or :meth:`cancel` is called.
        """
        lines: "queue.Queue" = queue.Queue()

        def read(name: str, stream: LogStream):
            try:
                for line in stream:
                    lines.put((name, line))
            except DockyardError as e:
                lines.put((name, f"error: {e}"))
            finally:
                lines.put((name, _END))

        active = set(self.streams)
        for name, stream in self.streams.items():
            threading.Thread(target=read, args=(name, stream), name=f"tail-{name}", daemon=True).start()

        while active and not self._cancel.is_set():
            try:
                name, line = lines.get(timeout=_POLL)
            except queue.Empty:
                continue
            if line is _END:
                active.discard(name)
                continue
            yield name, line

    def tail_logs(self, echo: Callable[[str], None]):
        """
        Writes every line as ``<service> | <line>`` through ``echo``.

        :param echo: Output function, e.g. ``click.echo``.
        """
        width = max((len(name) for name in self.streams), default=0)
        for name, line in self.merge():
            echo(f"{name:{width}} | {line}")

    def cancel(self):
        self._cancel.set()
        for stream in self.streams.values():
            stream.cancel()
