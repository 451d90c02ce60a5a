import base64
import mimetypes
import threading
import time
from typing import Callable, Optional


def now_ms() -> int:
    return int(time.time() * 1000)


def texts_path(uid: str) -> str:
    return f"users/{uid}/texts"


def files_prefix(uid: str) -> str:
    return f"users/{uid}/files/"


def file_path(uid: str, filename: str) -> str:
    # a slash would create a nested "folder" the listing never returns
    safe_name = filename.replace("/", "_")
    return files_prefix(uid) + safe_name


def basename(full_path: str) -> str:
    return full_path.rsplit("/", 1)[-1]


def guess_content_type(filename: str) -> str:
    return mimetypes.guess_type(filename)[0] or "application/octet-stream"


def to_data_uri(content: bytes, content_type: str) -> str:
    payload = base64.b64encode(content).decode("ascii")
    return f"data:{content_type};base64,{payload}"


def split_data_uri(data_uri: str) -> tuple[str, bytes]:
    """Return (mime_type, raw bytes) of an already validated data URI."""
    header, payload = data_uri.split(",", 1)
    mime = header[len("data:"):].split(";", 1)[0]
    return mime, base64.b64decode(payload)


class Subscription:
    """Cancellable handle around a store listener.

    `cancel()` calls the underlying unsubscribe at most once.
    """

    def __init__(self, unsubscribe: Optional[Callable[[], None]] = None):
        self._unsubscribe = unsubscribe
        self._lock = threading.Lock()
        self._cancelled = False

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            fn, self._unsubscribe = self._unsubscribe, None
        if fn is not None:
            fn()
