from __future__ import annotations

from typing import Callable

from fastapi import Depends, FastAPI, File, Header, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from .schemas import (
    ActionResponse,
    AiResult,
    Credentials,
    EmailBody,
    ExtractMetadataInput,
    ExtractMetadataOutput,
    ExtractRequest,
    FilesResponse,
    NewText,
    OkResponse,
    SessionResponse,
    SignInResponse,
    SummarizeInput,
    SummarizeOutput,
    SummarizeRequest,
    TextsResponse,
    User,
)
from .settings import settings
from .errors import AiFlowFailure, AuthFailure, EmailNotVerified, StoreFailure
from .auth import IdentityClient, auth_state, get_user
from .ai import AiFlowGateway
from .sync import SessionRegistry, SyncController, SessionContext
from . import storage as gcs
from . import firestore as fs

# =========================
# App
# =========================
app = FastAPI(title="CrossWire API")

Instrumentator().instrument(app).expose(app, endpoint="/metrics")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()],
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)


# =========================
# Error mapping
# =========================
@app.exception_handler(EmailNotVerified)
async def _email_not_verified(request: Request, exc: EmailNotVerified):
    return JSONResponse(status_code=403, content={"detail": exc.reason, "kind": "EmailNotVerified"})


@app.exception_handler(AuthFailure)
async def _auth_failure(request: Request, exc: AuthFailure):
    return JSONResponse(status_code=401, content={"detail": exc.reason, "kind": "AuthFailure"})


@app.exception_handler(StoreFailure)
async def _store_failure(request: Request, exc: StoreFailure):
    return JSONResponse(status_code=502, content={"detail": exc.reason, "kind": "StoreFailure"})


@app.exception_handler(AiFlowFailure)
async def _ai_failure(request: Request, exc: AiFlowFailure):
    return JSONResponse(status_code=502, content={"detail": exc.reason, "kind": "AiFlowFailure"})


# =========================
# Dependency providers
# =========================
def get_db():
    # Firestore access layer
    return fs.TextsRepo(fs.get_client())


def get_storage():
    # GCS access layer (module)
    return gcs


def get_ai() -> AiFlowGateway:
    return AiFlowGateway()


def get_auth() -> Callable[[str | None], dict]:
    # provide validator callable (in prod: Firebase)
    return get_user


def get_identity() -> IdentityClient:
    return IdentityClient(settings.firebase_api_key, auth_state)


_registry: SessionRegistry | None = None


def get_sessions(
    db=Depends(get_db),
    storage=Depends(get_storage),
    ai: AiFlowGateway = Depends(get_ai),
) -> SessionRegistry:
    global _registry
    if _registry is None:
        _registry = SessionRegistry(
            lambda: SyncController(
                context=SessionContext(),
                texts_repo=db,
                storage=storage,
                ai=ai,
                bucket=settings.gcs_bucket,
                url_ttl_seconds=settings.signed_url_ttl_seconds,
                max_metadata_bytes=settings.max_metadata_bytes,
            ),
            broker=auth_state,
        )
    return _registry


def get_current_user(
    authorization: str | None = Header(default=None),
    auth_fn: Callable[[str | None], dict] = Depends(get_auth),
) -> User:
    try:
        raw = auth_fn(authorization)
        user = User(**raw)
    except HTTPException:
        raise
    except Exception:
        raise HTTPException(status_code=401, detail="Unauthorized")

    if not user.email_verified:
        raise EmailNotVerified("Please check your inbox to verify your email address.")
    return user


def get_session(
    user: User = Depends(get_current_user),
    sessions: SessionRegistry = Depends(get_sessions),
) -> SyncController:
    # a verified token is the identity provider reporting a user
    return sessions.session_for(user)


def _action(ok: bool, session: SyncController) -> dict:
    return {"ok": ok, "notifications": session.drain_notifications()}


# =========================
# Routes
# =========================
@app.get("/healthz")
def healthz():
    return {"ok": True}


@app.post("/api/auth/signin", response_model=SignInResponse)
def sign_in(body: Credentials, identity: IdentityClient = Depends(get_identity)):
    return identity.sign_in(body.email, body.password)


@app.post("/api/auth/signup", response_model=OkResponse)
def sign_up(body: Credentials, identity: IdentityClient = Depends(get_identity)):
    identity.sign_up(body.email, body.password)
    return {"ok": True}


@app.post("/api/auth/reset-password", response_model=OkResponse)
def reset_password(body: EmailBody, identity: IdentityClient = Depends(get_identity)):
    identity.reset_password(body.email)
    return {"ok": True}


@app.post("/api/auth/signout", response_model=OkResponse)
def sign_out(
    user: User = Depends(get_current_user),
    identity: IdentityClient = Depends(get_identity),
    sessions: SessionRegistry = Depends(get_sessions),
):
    try:
        identity.sign_out(user.uid)
    finally:
        # the broker normally does this; make sure no mirror outlives sign-out
        sessions.end(user.uid)
    return {"ok": True}


@app.get("/api/session", response_model=SessionResponse)
def get_session_view(session: SyncController = Depends(get_session)):
    user = session.context.user
    return {
        "state": session.state,
        "email": user.email if user else None,
        "texts": session.texts,
        "files": session.files,
        "draft": session.draft,
        "pending_file": session.pending_file,
        "ai_result": session.ai_result,
        "notifications": session.drain_notifications(),
    }


@app.get("/api/texts", response_model=TextsResponse)
def list_texts(session: SyncController = Depends(get_session)):
    return {"state": session.state, "items": session.texts}


@app.post("/api/texts", response_model=ActionResponse)
def add_text(body: NewText, session: SyncController = Depends(get_session)):
    return _action(session.add_text(body.heading, body.content), session)


@app.delete("/api/texts/{text_id}", response_model=ActionResponse)
def delete_text(text_id: str, session: SyncController = Depends(get_session)):
    return _action(session.delete_text(text_id), session)


@app.get("/api/files", response_model=FilesResponse)
def list_files(refresh: bool = False, session: SyncController = Depends(get_session)):
    if refresh:
        session.refresh_files()
    return {"state": session.state, "items": session.files}


@app.post("/api/files", response_model=ActionResponse)
async def upload_file(
    file: UploadFile = File(...),
    session: SyncController = Depends(get_session),
):
    content = await file.read()
    ok = session.upload_file(file.filename or "", content, file.content_type)
    return _action(ok, session)


@app.delete("/api/files", response_model=ActionResponse)
def delete_file(path: str, session: SyncController = Depends(get_session)):
    return _action(session.delete_file(path), session)


@app.post("/api/session/summarize", response_model=AiResult)
def session_summarize(body: SummarizeRequest, session: SyncController = Depends(get_session)):
    result = session.summarize(body.text)
    if result is None:
        raise HTTPException(status_code=400, detail="text is required")
    return result


@app.post("/api/session/extract-metadata", response_model=AiResult)
def session_extract_metadata(body: ExtractRequest, session: SyncController = Depends(get_session)):
    result = session.extract_metadata(body.full_path)
    if result is None:
        raise HTTPException(status_code=403, detail="File is outside your namespace")
    return result


@app.delete("/api/session/ai-result", response_model=OkResponse)
def dismiss_ai_result(session: SyncController = Depends(get_session)):
    session.dismiss_ai_result()
    return {"ok": True}


@app.post("/api/ai/summarize", response_model=SummarizeOutput)
def ai_summarize(
    body: SummarizeInput,
    user: User = Depends(get_current_user),
    ai: AiFlowGateway = Depends(get_ai),
):
    return ai.summarize(body)


@app.post("/api/ai/extract-metadata", response_model=ExtractMetadataOutput)
def ai_extract_metadata(
    body: ExtractMetadataInput,
    user: User = Depends(get_current_user),
    ai: AiFlowGateway = Depends(get_ai),
):
    return ai.extract_metadata(body)
