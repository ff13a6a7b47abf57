"""Firebase app bootstrap and ID-token verification for API requests."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import firebase_admin
from firebase_admin import auth, credentials, firestore

from supportdesk.config import DevUser

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """Raised when a request carries no usable Firebase ID token."""


@dataclass
class AuthenticatedUser:
    uid: str
    email: str
    name: str | None = None

    @property
    def user_id(self) -> str:
        """Key for per-user storage; the email, matching how users share a Gmail inbox."""
        return self.email.strip().lower() or self.uid


def extract_bearer_token(authorization: str | None) -> str | None:
    """Parse Authorization header as Bearer token, returning None if absent/invalid."""

    if not authorization:
        return None
    parts = authorization.strip().split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


def initialize_firebase(
    *,
    credentials_path: str | None,
    project_id: str | None,
) -> firebase_admin.App:
    """Initialize (or reuse) the default Firebase app."""

    try:
        return firebase_admin.get_app()
    except ValueError:
        pass
    options = {"projectId": project_id} if project_id else None
    if credentials_path:
        cred = credentials.Certificate(credentials_path)
        return firebase_admin.initialize_app(cred, options)
    # Application default credentials (e.g. on Cloud Run).
    return firebase_admin.initialize_app(options=options)


def create_firestore_client(app: firebase_admin.App | None) -> Any | None:
    if app is None:
        return None
    return firestore.client(app)


class FirebaseAuthService:
    """Verifies Firebase ID tokens; returns the configured dev user when disabled."""

    def __init__(
        self,
        *,
        enabled: bool,
        app: firebase_admin.App | None = None,
        dev_user: DevUser | None = None,
    ) -> None:
        self._enabled = enabled
        self._app = app
        self._dev_user = dev_user

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    def verify_bearer(self, authorization: str | None) -> AuthenticatedUser:
        if not self._enabled:
            if self._dev_user is None:
                raise AuthError("Authentication is disabled and no dev user is configured.")
            return AuthenticatedUser(
                uid=self._dev_user.uid,
                email=self._dev_user.email,
                name=self._dev_user.name,
            )

        token = extract_bearer_token(authorization)
        if not token:
            raise AuthError("Missing bearer token.")
        try:
            decoded = auth.verify_id_token(token, app=self._app)
        except (ValueError, auth.InvalidIdTokenError, auth.ExpiredIdTokenError) as exc:
            logger.warning("Firebase token rejected: %s", exc)
            raise AuthError("Invalid or expired token.") from exc
        except auth.CertificateFetchError as exc:
            logger.error("Firebase certificate fetch failed: %s", exc)
            raise AuthError("Unable to verify token right now.") from exc

        email = decoded.get("email") or ""
        if not email:
            raise AuthError("Token has no email claim.")
        return AuthenticatedUser(
            uid=str(decoded.get("uid") or decoded.get("user_id") or ""),
            email=email,
            name=decoded.get("name"),
        )
