from __future__ import annotations

import threading
from typing import Callable, Optional

import firebase_admin
import httpx
from fastapi import HTTPException
from firebase_admin import auth

from .errors import AuthFailure, EmailNotVerified
from .log import get_logger
from .schemas import SignInResponse, User
from .settings import settings

logger = get_logger(__name__)

IDENTITY_URL = "https://identitytoolkit.googleapis.com/v1"

# Firebase REST error codes -> text shown to the user
_REASONS = {
    "EMAIL_NOT_FOUND": "No account exists for this email.",
    "INVALID_PASSWORD": "The password is incorrect.",
    "INVALID_LOGIN_CREDENTIALS": "The email or password is incorrect.",
    "USER_DISABLED": "This account has been disabled.",
    "EMAIL_EXISTS": "An account already exists for this email.",
    "INVALID_EMAIL": "The email address is badly formatted.",
    "MISSING_PASSWORD": "A password is required.",
    "TOO_MANY_ATTEMPTS_TRY_LATER": "Too many attempts. Try again later.",
}

AuthStateCallback = Callable[[str, Optional[User]], None]

_app = None


def init_firebase():
    global _app
    if _app:
        return
    firebase_admin.initialize_app(options={"projectId": settings.firebase_project_id})
    _app = True


def get_user(authorization: str | None):
    init_firebase()
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")

    token = authorization.split(" ", 1)[1].strip()
    try:
        # revoked after sign-out
        decoded = auth.verify_id_token(token, check_revoked=True)
    except auth.RevokedIdTokenError:
        raise HTTPException(status_code=401, detail="Token revoked")
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid token")

    return {
        "uid": decoded.get("uid"),
        "email": decoded.get("email", ""),
        "email_verified": bool(decoded.get("email_verified", False)),
    }


class AuthStateBroker:
    """Fan-out of auth state changes: (uid, user) on sign-in, (uid, None) on sign-out."""

    def __init__(self):
        self._lock = threading.Lock()
        self._callbacks: list[AuthStateCallback] = []

    def on_auth_state_change(self, callback: AuthStateCallback) -> Callable[[], None]:
        with self._lock:
            self._callbacks.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unsubscribe

    def publish(self, uid: str, user: Optional[User]) -> None:
        with self._lock:
            callbacks = list(self._callbacks)
        for cb in callbacks:
            cb(uid, user)


auth_state = AuthStateBroker()


def _reason(payload: dict) -> str:
    message = (payload.get("error") or {}).get("message", "")
    # messages look like "WEAK_PASSWORD : Password should be at least 6 characters"
    code, _, detail = message.partition(" : ")
    code = code.strip()
    if code in _REASONS:
        return _REASONS[code]
    if detail:
        return detail.strip()
    return code.replace("_", " ").capitalize() or "Authentication failed."


class IdentityClient:
    """Email/password flows against the Firebase Identity Toolkit REST API."""

    def __init__(self, api_key: str, broker: AuthStateBroker, *, timeout: float = 10.0):
        self._api_key = api_key
        self._broker = broker
        self._timeout = timeout

    def _post(self, method: str, body: dict) -> dict:
        if not self._api_key:
            raise AuthFailure("FIREBASE_API_KEY is not configured")
        try:
            r = httpx.post(
                f"{IDENTITY_URL}/accounts:{method}",
                params={"key": self._api_key},
                json=body,
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            logger.warning("Identity %s request failed: %s", method, exc)
            raise AuthFailure("Could not reach the authentication service.") from exc

        try:
            payload = r.json()
        except ValueError:
            payload = {}
        if r.status_code != 200:
            raise AuthFailure(_reason(payload))
        return payload

    def sign_in(self, email: str, password: str) -> SignInResponse:
        data = self._post(
            "signInWithPassword",
            {"email": email, "password": password, "returnSecureToken": True},
        )
        looked_up = self._post("lookup", {"idToken": data["idToken"]})
        users = looked_up.get("users") or [{}]
        user = User(
            uid=data["localId"],
            email=data.get("email", email),
            email_verified=bool(users[0].get("emailVerified", False)),
        )

        if not user.email_verified:
            # a half-authenticated session must not survive
            self.sign_out(user.uid)
            raise EmailNotVerified("Please check your inbox to verify your email address.")

        logger.info("Signed in uid=%s", user.uid)
        self._broker.publish(user.uid, user)
        return SignInResponse(
            uid=user.uid,
            email=user.email,
            id_token=data["idToken"],
            refresh_token=data.get("refreshToken", ""),
            expires_in=int(data.get("expiresIn", 3600)),
        )

    def sign_up(self, email: str, password: str) -> str:
        data = self._post(
            "signUp",
            {"email": email, "password": password, "returnSecureToken": True},
        )
        self._post("sendOobCode", {"requestType": "VERIFY_EMAIL", "idToken": data["idToken"]})
        logger.info("Created account uid=%s, verification email sent", data.get("localId"))
        return data["localId"]

    def reset_password(self, email: str) -> None:
        if not email.strip():
            raise AuthFailure("Please enter your email address to reset your password.")
        self._post("sendOobCode", {"requestType": "PASSWORD_RESET", "email": email.strip()})

    def sign_out(self, uid: str) -> None:
        init_firebase()
        try:
            auth.revoke_refresh_tokens(uid)
        except Exception as exc:
            logger.warning("Revoking tokens for uid=%s failed: %s", uid, exc)
            raise AuthFailure("Could not sign out.") from exc
        finally:
            self._broker.publish(uid, None)
        logger.info("Signed out uid=%s", uid)

    def on_auth_state_change(self, callback: AuthStateCallback) -> Callable[[], None]:
        return self._broker.on_auth_state_change(callback)
