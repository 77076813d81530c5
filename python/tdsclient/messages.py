"""
Out-of-band server messages.

The native library reports informational prints, warnings and errors through
two process-wide callbacks. They are fanned out here to subscribers, and the
last error-level text per connection handle is remembered so that a failed
command can report something more useful than "it failed".
"""

import contextlib
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional

import structlog

logger = structlog.get_logger()

# Messages at or below this severity are informational (PRINT, RAISERROR ... 10).
INFO_SEVERITY = 10

# Key used for callbacks that arrive without a connection handle.
NO_HANDLE = 0


@dataclass(frozen=True)
class ServerMessage:
    """A single message from the server or from the native library itself."""
    code: int
    message: str
    severity: int
    state: int = 0
    server: Optional[str] = None
    procedure: Optional[str] = None
    line: int = 0
    handle: int = NO_HANDLE
    from_library: bool = False

    @property
    def is_error(self) -> bool:
        return self.from_library or self.severity > INFO_SEVERITY


MessageHandler = Callable[[ServerMessage], None]


@dataclass
class CapturedErrors:
    """Error-level messages published on one thread inside ``MessageCenter.capture()``."""
    messages: List[ServerMessage] = field(default_factory=list)

    @property
    def last_error(self) -> Optional[str]:
        return self.messages[-1].message if self.messages else None

    @property
    def handles(self) -> List[int]:
        return sorted({m.handle for m in self.messages})


class MessageCenter:
    """Thread-safe registry of message subscribers and per-handle last errors."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: List[MessageHandler] = []
        self._last_error: Dict[int, str] = {}
        self._local = threading.local()

    def subscribe(self, handler: MessageHandler) -> Callable[[], None]:
        """Register ``handler``; returns a callable that removes it again."""
        with self._lock:
            self._subscribers.append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._subscribers:
                    self._subscribers.remove(handler)

        return unsubscribe

    def publish(self, message: ServerMessage) -> None:
        if message.is_error:
            with self._lock:
                self._last_error[message.handle] = message.message
            captured = getattr(self._local, "captured", None)
            if captured is not None:
                captured.messages.append(message)
        with self._lock:
            subscribers = list(self._subscribers)
        for handler in subscribers:
            try:
                handler(message)
            except Exception as e:
                logger.warning("Message handler raised", handler=repr(handler), error=str(e))

    def last_error(self, handle: int) -> Optional[str]:
        with self._lock:
            return self._last_error.get(handle)

    def clear(self, handle: int) -> None:
        with self._lock:
            self._last_error.pop(handle, None)

    @contextlib.contextmanager
    def capture(self) -> Iterator[CapturedErrors]:
        """Collect error messages published on the calling thread.

        Login failures are reported against a handle the library frees before
        the open call returns, so they cannot be looked up by handle afterwards.
        """
        previous = getattr(self._local, "captured", None)
        captured = CapturedErrors()
        self._local.captured = captured
        try:
            yield captured
        finally:
            self._local.captured = previous


_center = MessageCenter()


def get_message_center() -> MessageCenter:
    return _center


def subscribe(handler: MessageHandler) -> Callable[[], None]:
    """Subscribe to every server message from every connection in the process."""
    return _center.subscribe(handler)
