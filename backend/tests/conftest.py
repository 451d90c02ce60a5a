import json
import os
import uuid

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

os.environ.setdefault("GCP_PROJECT_ID", "test-project")
os.environ.setdefault("GCS_BUCKET", "test-bucket")
os.environ.setdefault("FIREBASE_PROJECT_ID", "test-project")

from crosswire.ai import AiFlowGateway  # noqa: E402
from crosswire.auth import AuthStateBroker  # noqa: E402
from crosswire.errors import AuthFailure, EmailNotVerified, StoreFailure  # noqa: E402
from crosswire.main import app, get_ai, get_auth, get_identity, get_sessions  # noqa: E402
from crosswire.schemas import SignInResponse, TextItem, User  # noqa: E402
from crosswire.sync import SessionContext, SessionRegistry, SyncController  # noqa: E402
from crosswire.utils import Subscription, file_path, files_prefix, texts_path  # noqa: E402


# -------------------------
# Firestore-like fakes
# -------------------------
class FakeTextsRepo:
    """In-memory texts store; every write re-emits a full snapshot synchronously."""

    def __init__(self):
        self.docs: dict[str, dict[str, dict]] = {}
        self.listeners: dict[str, list] = {}
        self.writes: list[tuple[str, dict]] = []
        self.deletes: list[tuple[str, str]] = []
        self.unsubscribed = 0
        self.fail_writes = False
        self.fail_subscribe = False

    def _snapshot(self, uid: str) -> list[TextItem]:
        return [TextItem(id=i, **d) for i, d in self.docs.get(texts_path(uid), {}).items()]

    def _emit(self, uid: str):
        for on_snapshot, _ in list(self.listeners.get(uid, [])):
            on_snapshot(self._snapshot(uid))

    def subscribe(self, uid, on_snapshot, on_error):
        if self.fail_subscribe:
            raise StoreFailure("subscribe failed: unavailable")
        entry = (on_snapshot, on_error)
        self.listeners.setdefault(uid, []).append(entry)

        def unsubscribe():
            self.unsubscribed += 1
            self.listeners[uid].remove(entry)

        on_snapshot(self._snapshot(uid))
        return Subscription(unsubscribe)

    def create_text(self, uid, data):
        if self.fail_writes:
            raise StoreFailure("write failed: permission denied")
        text_id = uuid.uuid4().hex
        self.docs.setdefault(texts_path(uid), {})[text_id] = dict(data)
        self.writes.append((uid, dict(data)))
        self._emit(uid)
        return text_id

    def delete_text(self, uid, text_id):
        self.docs.get(texts_path(uid), {}).pop(text_id, None)
        self.deletes.append((uid, text_id))
        self._emit(uid)

    def error(self, uid, exc):
        for _, on_error in list(self.listeners.get(uid, [])):
            on_error(exc)


class FakeStorage:
    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.signed = 0
        self.fail_uploads = False
        self.fail_lists = False

    def upload_file(self, bucket, uid, filename, content, content_type):
        if self.fail_uploads:
            raise StoreFailure("upload failed: quota exceeded")
        key = file_path(uid, filename)
        self.objects[f"{bucket}/{key}"] = content
        return key, len(content)

    def list_files(self, bucket, uid):
        if self.fail_lists:
            raise StoreFailure("list failed: unavailable")
        prefix = f"{bucket}/{files_prefix(uid)}"
        return sorted(k[len(bucket) + 1:] for k in self.objects if k.startswith(prefix))

    def resolve_url(self, bucket, obj_name, *, ttl_seconds=900):
        self.signed += 1
        return f"https://storage.test/{bucket}/{obj_name}?sig={self.signed}&ttl={ttl_seconds}"

    def download_bytes(self, bucket, obj_name, *, max_bytes=5_000_000):
        if f"{bucket}/{obj_name}" not in self.objects:
            raise StoreFailure("download failed: not found")
        return self.objects[f"{bucket}/{obj_name}"][: max_bytes + 1]

    def delete_object(self, bucket, obj_name):
        if f"{bucket}/{obj_name}" not in self.objects:
            raise StoreFailure("delete failed: not found")
        del self.objects[f"{bucket}/{obj_name}"]


# -------------------------
# Gemini-like fake
# -------------------------
class FakeResponse:
    def __init__(self, text: str):
        self.text = text


class FakeModel:
    """Answers with JSON matching whichever flow's prompt it receives."""

    def __init__(self, raw: str | None = None, error: Exception | None = None):
        self.raw = raw
        self.error = error
        self.calls: list[list] = []

    def generate_content(self, contents):
        self.calls.append(contents)
        if self.error:
            raise self.error
        if self.raw is not None:
            return FakeResponse(self.raw)
        if isinstance(contents[-1], dict):
            size = len(contents[-1]["data"])
            return FakeResponse(json.dumps({"metadata": f"{contents[-1]['mime_type']}, {size} bytes"}))
        return FakeResponse(json.dumps({"summary": contents[0].rsplit("\n", 1)[-1][:40]}))


# -------------------------
# Identity fake
# -------------------------
class FakeIdentity:
    def __init__(self, broker: AuthStateBroker):
        self.broker = broker
        self.accounts: dict[str, dict] = {
            "user@test.com": {"uid": "user_uid", "password": "secret1", "verified": True},
            "new@test.com": {"uid": "new_uid", "password": "secret1", "verified": False},
        }
        self.revoked: list[str] = []
        self.reset_requests: list[str] = []

    def sign_in(self, email, password):
        acct = self.accounts.get(email)
        if not acct or acct["password"] != password:
            raise AuthFailure("The email or password is incorrect.")
        if not acct["verified"]:
            self.sign_out(acct["uid"])
            raise EmailNotVerified("Please check your inbox to verify your email address.")
        self.broker.publish(acct["uid"], User(uid=acct["uid"], email=email, email_verified=True))
        return SignInResponse(uid=acct["uid"], email=email, id_token="user", refresh_token="r")

    def sign_up(self, email, password):
        if email in self.accounts:
            raise AuthFailure("An account already exists for this email.")
        uid = uuid.uuid4().hex
        self.accounts[email] = {"uid": uid, "password": password, "verified": False}
        return uid

    def reset_password(self, email):
        if not email.strip():
            raise AuthFailure("Please enter your email address to reset your password.")
        self.reset_requests.append(email)

    def sign_out(self, uid):
        self.revoked.append(uid)
        self.broker.publish(uid, None)


TOKENS = {
    "user": {"uid": "user_uid", "email": "user@test.com", "email_verified": True},
    "user-laptop": {"uid": "user_uid", "email": "user@test.com", "email_verified": True},
    "other": {"uid": "other_uid", "email": "other@test.com", "email_verified": True},
    "unverified": {"uid": "new_uid", "email": "new@test.com", "email_verified": False},
}


# -------------------------
# Fixtures
# -------------------------
@pytest.fixture()
def fake_db():
    return FakeTextsRepo()


@pytest.fixture()
def fake_storage():
    return FakeStorage()


@pytest.fixture()
def fake_model():
    return FakeModel()


@pytest.fixture()
def gateway(fake_model):
    return AiFlowGateway(model=fake_model)


@pytest.fixture()
def clock():
    ticks = iter(range(1_700_000_000_000, 1_800_000_000_000))
    return lambda: next(ticks)


@pytest.fixture()
def make_controller(fake_db, fake_storage, gateway, clock):
    def _make():
        return SyncController(
            context=SessionContext(),
            texts_repo=fake_db,
            storage=fake_storage,
            ai=gateway,
            bucket="test-bucket",
            clock=clock,
        )
    return _make


@pytest.fixture()
def controller(make_controller):
    ctrl = make_controller()
    ctrl.start(User(uid="user_uid", email="user@test.com", email_verified=True))
    yield ctrl
    ctrl.teardown()


@pytest.fixture()
def broker():
    return AuthStateBroker()


@pytest.fixture()
def fake_identity(broker):
    return FakeIdentity(broker)


@pytest.fixture()
def registry(make_controller, broker):
    reg = SessionRegistry(make_controller, broker=broker)
    yield reg
    reg.close()


@pytest.fixture()
def client(registry, fake_identity, gateway):
    def fake_get_auth():
        def _auth(authorization: str | None):
            if not authorization or not authorization.startswith("Bearer "):
                raise HTTPException(status_code=401, detail="Unauthorized")

            token = authorization.split(" ", 1)[1].strip()
            claims = TOKENS.get(token)
            if claims is None:
                raise HTTPException(status_code=401, detail="Unauthorized")
            if claims["uid"] in fake_identity.revoked:
                raise HTTPException(status_code=401, detail="Token revoked")
            return dict(claims)
        return _auth

    app.dependency_overrides[get_sessions] = lambda: registry
    app.dependency_overrides[get_identity] = lambda: fake_identity
    app.dependency_overrides[get_ai] = lambda: gateway
    app.dependency_overrides[get_auth] = fake_get_auth

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}
