"""
Caller identity for the marketplace API.

Bearer tokens are Firebase ID tokens verified with the Firebase Admin SDK.
When Firebase is not initialized and AUTH_DEV_MODE is on, the identity is
taken from the user-email / user-uid / user-name headers instead.
"""
import logging
from typing import Optional

from fastapi import Header, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from firebase_admin import auth as firebase_auth

import config
from marketplace_models import UserIdentity
from marketplace_storage import is_firebase_ready

logger = logging.getLogger(__name__)

bearer = HTTPBearer(scheme_name="FirebaseIdToken", bearerFormat="JWT", auto_error=False)


def verify_id_token(token: str) -> UserIdentity:
    """Verify a Firebase ID token and return the identity it carries"""
    try:
        decoded = firebase_auth.verify_id_token(token)
    except (ValueError, firebase_auth.InvalidIdTokenError, firebase_auth.ExpiredIdTokenError,
            firebase_auth.RevokedIdTokenError, firebase_auth.CertificateFetchError) as e:
        logger.error(f"Firebase token verification failed: {e}")
        raise HTTPException(status_code=401, detail="Unauthorized: Invalid or expired token")

    email = decoded.get("email")
    if not email:
        raise HTTPException(status_code=401, detail="Unauthorized: Token has no email claim")

    identity = UserIdentity(
        uid=decoded.get("uid") or decoded.get("sub") or "",
        email=email,
        name=decoded.get("name") or email,
        picture=decoded.get("picture"),
        email_verified=bool(decoded.get("email_verified", False)),
    )
    logger.info(f"User authenticated: {identity.email}")
    return identity


def development_identity(
    user_email: Optional[str] = None,
    user_uid: Optional[str] = None,
    user_name: Optional[str] = None,
) -> UserIdentity:
    return UserIdentity(
        uid=user_uid or config.DEV_USER_UID,
        email=user_email or config.DEV_USER_EMAIL,
        name=user_name or config.DEV_USER_NAME,
        is_development=True,
    )


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer),
    user_email: Optional[str] = Header(None, alias="user-email"),
    user_uid: Optional[str] = Header(None, alias="user-uid"),
    user_name: Optional[str] = Header(None, alias="user-name"),
) -> UserIdentity:
    """FastAPI dependency resolving the authenticated caller"""
    if not credentials or (credentials.scheme or "").lower() != "bearer" or not credentials.credentials.strip():
        raise HTTPException(status_code=401, detail="Unauthorized: No token provided")

    if is_firebase_ready():
        return verify_id_token(credentials.credentials.strip())

    if not config.AUTH_DEV_MODE:
        logger.error("Firebase is not initialized and AUTH_DEV_MODE is disabled")
        raise HTTPException(status_code=503, detail="Authentication service unavailable")

    logger.warning("Development mode: Bypassing Firebase authentication")
    return development_identity(user_email, user_uid, user_name)
