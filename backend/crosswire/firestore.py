from __future__ import annotations

from contextlib import contextmanager
from functools import lru_cache
from typing import Callable

from google.cloud import firestore

from .errors import StoreFailure
from .log import get_logger
from .schemas import TextItem
from .settings import settings
from .utils import Subscription, texts_path

logger = get_logger(__name__)

SnapshotCallback = Callable[[list[TextItem]], None]
ErrorCallback = Callable[[Exception], None]


@lru_cache
def get_client() -> firestore.Client:
    return firestore.Client(project=settings.gcp_project_id)


@contextmanager
def _store_call(action: str):
    try:
        yield
    except StoreFailure:
        raise
    except Exception as exc:
        logger.warning("Firestore %s failed: %s", action, exc)
        raise StoreFailure(f"{action} failed: {exc}") from exc


def _to_item(snap) -> TextItem:
    data = snap.to_dict() or {}
    return TextItem(
        id=snap.id,
        heading=data.get("heading", ""),
        content=data.get("content", ""),
        timestamp=int(data.get("timestamp", 0)),
    )


class TextsRepo:
    """Firestore access layer for a user's text snippets (users/<uid>/texts)."""

    def __init__(self, client: firestore.Client):
        self._c = client

    def _col(self, uid: str):
        return self._c.collection(texts_path(uid))

    def subscribe(self, uid: str, on_snapshot: SnapshotCallback, on_error: ErrorCallback) -> Subscription:
        """Deliver the full text collection on every change.

        Firestore invokes the callback on its own thread with every document
        in the collection, so each call is a complete snapshot.
        """

        def _callback(docs, changes, read_time):
            try:
                items = [_to_item(d) for d in docs]
            except Exception as exc:
                on_error(StoreFailure(f"could not read texts snapshot: {exc}"))
                return
            on_snapshot(items)

        with _store_call("subscribe"):
            watch = self._col(uid).on_snapshot(_callback)
        return Subscription(watch.unsubscribe)

    def create_text(self, uid: str, data: dict) -> str:
        with _store_call("write"):
            ref = self._col(uid).document()
            ref.set(data)
        return ref.id

    def delete_text(self, uid: str, text_id: str) -> None:
        # deleting a missing document is a successful no-op in Firestore
        with _store_call("delete"):
            self._col(uid).document(text_id).delete()
