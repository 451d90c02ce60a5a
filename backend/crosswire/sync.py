"""
Sync controller - per-user mirror of texts and files.

The controller owns derived, in-memory copies of the user's Firestore texts
and GCS files. Remote state stays authoritative:

- texts: live subscription; every snapshot replaces the whole mirror
- files: no live primitive; the prefix is re-listed after each mutation and
  every URL is re-signed on each listing

Mutations never touch the mirrors directly. Failures become notifications and
leave the current mirrors intact.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from types import ModuleType
from typing import TYPE_CHECKING, Callable, Optional

from pydantic import ValidationError

from .errors import AiFlowFailure, StoreFailure
from .log import get_logger
from .schemas import (
    AiResult,
    ExtractMetadataInput,
    FileItem,
    Notification,
    SessionState,
    SummarizeInput,
    TextDraft,
    TextItem,
    User,
)
from .utils import Subscription, basename, files_prefix, guess_content_type, now_ms, to_data_uri

if TYPE_CHECKING:
    from .ai import AiFlowGateway
    from .firestore import TextsRepo

logger = get_logger(__name__)

MAX_NOTIFICATIONS = 50


@dataclass
class SessionContext:
    user: Optional[User] = None
    state: SessionState = SessionState.UNAUTHENTICATED

    @property
    def uid(self) -> str:
        if self.user is None:
            raise RuntimeError("session has no user")
        return self.user.uid


@dataclass
class _Loading:
    texts: bool = False
    files: bool = False


@dataclass
class SyncController:
    context: SessionContext
    texts_repo: TextsRepo
    storage: ModuleType
    ai: AiFlowGateway
    bucket: str
    url_ttl_seconds: int = 900
    max_metadata_bytes: int = 5_000_000
    clock: Callable[[], int] = now_ms

    texts: list[TextItem] = field(default_factory=list)
    files: list[FileItem] = field(default_factory=list)
    draft: TextDraft = field(default_factory=TextDraft)
    pending_file: Optional[str] = None
    ai_result: Optional[AiResult] = None

    def __post_init__(self):
        self._lock = threading.RLock()
        self._alive = False
        self._loading = _Loading()
        self._subscription: Optional[Subscription] = None
        self._notifications: deque[Notification] = deque(maxlen=MAX_NOTIFICATIONS)

    # -------------------------
    # Lifecycle
    # -------------------------
    @property
    def state(self) -> SessionState:
        return self.context.state

    @property
    def alive(self) -> bool:
        return self._alive

    def start(self, user: User) -> None:
        with self._lock:
            if self._alive and self.context.user and self.context.user.uid == user.uid:
                return
            if self._alive:
                self.teardown()
            self.context.user = user
            self.context.state = SessionState.LOADING
            self._loading = _Loading()
            self._alive = True

        logger.info("Session loading uid=%s", user.uid)
        try:
            sub = self.texts_repo.subscribe(user.uid, self._on_texts, self._on_texts_error)
        except StoreFailure as exc:
            logger.warning("Texts subscription failed for uid=%s: %s", user.uid, exc.reason)
            # without a live stream the text mirror could never load
            self.teardown()
            raise
        with self._lock:
            if self._alive:
                self._subscription = sub
            else:
                sub.cancel()

        self.refresh_files(initial=True)

    def teardown(self) -> None:
        with self._lock:
            if not self._alive and self.context.state == SessionState.UNAUTHENTICATED:
                return
            uid = self.context.user.uid if self.context.user else None
            self._alive = False
            sub, self._subscription = self._subscription, None
            self.texts = []
            self.files = []
            self.draft = TextDraft()
            self.pending_file = None
            self.ai_result = None
            self._notifications.clear()
            self.context.user = None
            self.context.state = SessionState.UNAUTHENTICATED
        if sub is not None:
            sub.cancel()
        logger.info("Session torn down uid=%s", uid)

    def _maybe_ready(self) -> None:
        if self.context.state == SessionState.LOADING and self._loading.texts and self._loading.files:
            self.context.state = SessionState.READY
            logger.info("Session ready uid=%s", self.context.uid)

    # -------------------------
    # Notifications
    # -------------------------
    def _notify(self, kind: str, title: str, description: str = "") -> None:
        with self._lock:
            if self._alive:
                self._notifications.append(Notification(kind=kind, title=title, description=description))

    def _notify_error(self, title: str, description: str = "") -> None:
        self._notify("error", title, description)

    def drain_notifications(self) -> list[Notification]:
        with self._lock:
            out = list(self._notifications)
            self._notifications.clear()
        return out

    # -------------------------
    # Texts
    # -------------------------
    def _on_texts(self, items: list[TextItem]) -> None:
        ordered = sorted(items, key=lambda t: t.timestamp, reverse=True)
        with self._lock:
            if not self._alive:
                return
            self.texts = ordered
            self._loading.texts = True
            self._maybe_ready()

    def _on_texts_error(self, exc: Exception) -> None:
        reason = exc.reason if isinstance(exc, StoreFailure) else str(exc)
        logger.warning("Texts subscription error: %s", reason)
        self._notify_error("Sync failed", reason)

    def add_text(self, heading: str, content: str) -> bool:
        if not self._alive or not heading.strip() or not content.strip():
            return False

        with self._lock:
            self.draft = TextDraft(heading=heading, content=content)
            uid = self.context.uid

        try:
            self.texts_repo.create_text(
                uid,
                {"heading": heading, "content": content, "timestamp": self.clock()},
            )
        except StoreFailure as exc:
            self._notify_error("Save failed", exc.reason)
            return False

        with self._lock:
            if self._alive:
                self.draft = TextDraft()
        self._notify("success", "Text saved!")
        return True

    def delete_text(self, text_id: str) -> bool:
        if not self._alive:
            return False
        try:
            self.texts_repo.delete_text(self.context.uid, text_id)
        except StoreFailure as exc:
            self._notify_error("Deletion failed", exc.reason)
            return False
        # the mirror follows on the next snapshot
        self._notify("success", "Text deleted.")
        return True

    # -------------------------
    # Files
    # -------------------------
    def refresh_files(self, *, initial: bool = False) -> bool:
        if not self._alive:
            return False
        uid = self.context.uid
        try:
            items = [
                FileItem(
                    name=basename(path),
                    full_path=path,
                    url=self.storage.resolve_url(self.bucket, path, ttl_seconds=self.url_ttl_seconds),
                )
                for path in self.storage.list_files(self.bucket, uid)
            ]
        except StoreFailure as exc:
            self._notify_error("Could not load files", exc.reason)
            with self._lock:
                if initial and self._alive:
                    self._loading.files = True
                    self._maybe_ready()
            return False

        with self._lock:
            if not self._alive:
                return False
            self.files = items
            self._loading.files = True
            self._maybe_ready()
        return True

    def upload_file(self, filename: str, content: bytes, content_type: Optional[str] = None) -> bool:
        if not self._alive or not filename:
            return False
        self.pending_file = filename
        try:
            self.storage.upload_file(
                self.bucket,
                self.context.uid,
                filename,
                content,
                content_type or guess_content_type(filename),
            )
            self.refresh_files()
        except StoreFailure as exc:
            self._notify_error("Upload failed", exc.reason)
            return False
        finally:
            with self._lock:
                if self._alive:
                    self.pending_file = None
        self._notify("success", "File uploaded successfully!")
        return True

    def _owns(self, full_path: str) -> bool:
        prefix = files_prefix(self.context.uid)
        return full_path.startswith(prefix) and "/" not in full_path[len(prefix):]

    def delete_file(self, full_path: str) -> bool:
        if not self._alive:
            return False
        if not self._owns(full_path):
            self._notify_error("Deletion failed", "File is outside your namespace.")
            return False
        try:
            self.storage.delete_object(self.bucket, full_path)
            self.refresh_files()
        except StoreFailure as exc:
            self._notify_error("Deletion failed", exc.reason)
            return False
        self._notify("success", "File deleted.")
        return True

    # -------------------------
    # AI flows
    # -------------------------
    def _show(self, result: AiResult) -> AiResult:
        with self._lock:
            if self._alive:
                self.ai_result = result
        return result

    def summarize(self, text: str) -> Optional[AiResult]:
        if not self._alive or not text.strip():
            return None
        try:
            out = self.ai.summarize(SummarizeInput(text=text))
        except AiFlowFailure as exc:
            logger.warning("Summarize failed: %s", exc.reason)
            return self._show(AiResult(title="Error", content="Could not generate summary."))
        return self._show(AiResult(title="Summary", content=out.summary))

    def extract_metadata(self, full_path: str) -> Optional[AiResult]:
        if not self._alive:
            return None
        if not self._owns(full_path):
            self._notify_error("Extraction failed", "File is outside your namespace.")
            return None
        try:
            raw = self.storage.download_bytes(self.bucket, full_path, max_bytes=self.max_metadata_bytes)
            raw = raw[: self.max_metadata_bytes]
            data_uri = to_data_uri(raw, guess_content_type(basename(full_path)))
            out = self.ai.extract_metadata(ExtractMetadataInput(file_data_uri=data_uri))
        except (StoreFailure, AiFlowFailure, ValidationError) as exc:
            logger.warning("Metadata extraction failed for %s: %s", full_path, exc)
            return self._show(AiResult(title="Error", content="Could not extract metadata."))
        return self._show(AiResult(title="Extracted Metadata", content=out.metadata))

    def dismiss_ai_result(self) -> None:
        with self._lock:
            self.ai_result = None


class SessionRegistry:
    """One SyncController per signed-in user, driven by auth state changes."""

    def __init__(self, factory: Callable[[], SyncController], broker=None):
        self._factory = factory
        self._lock = threading.Lock()
        self._sessions: dict[str, SyncController] = {}
        self._unsubscribe = broker.on_auth_state_change(self._on_auth_state) if broker else None

    def _on_auth_state(self, uid: str, user: Optional[User]) -> None:
        if user is None:
            self.end(uid)
            return
        try:
            self.session_for(user)
        except StoreFailure as exc:
            # the next authenticated request starts it again
            logger.warning("Could not start session uid=%s: %s", uid, exc.reason)

    def get(self, uid: str) -> Optional[SyncController]:
        with self._lock:
            return self._sessions.get(uid)

    def session_for(self, user: User) -> SyncController:
        with self._lock:
            ctrl = self._sessions.get(user.uid)
            created = ctrl is None
            if created:
                ctrl = self._factory()
                self._sessions[user.uid] = ctrl
        if created:
            try:
                ctrl.start(user)
            except StoreFailure:
                with self._lock:
                    if self._sessions.get(user.uid) is ctrl:
                        del self._sessions[user.uid]
                raise
        return ctrl

    def end(self, uid: str) -> None:
        with self._lock:
            ctrl = self._sessions.pop(uid, None)
        if ctrl is not None:
            ctrl.teardown()

    def close(self) -> None:
        with self._lock:
            sessions, self._sessions = list(self._sessions.values()), {}
        for ctrl in sessions:
            ctrl.teardown()
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
