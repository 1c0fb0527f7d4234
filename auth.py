"""Firebase authentication and role resolution.

A user's role is resolved by walking an ordered list of strategies, each
returning a role or None, and taking the first match:

1. the ``role`` claim of the verified ID token
2. the admin email allowlist (``ADMIN_EMAILS``)
3. custom claims stored on the Firebase user record
4. ``end-user``
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

import firebase_admin
from fastapi import Depends, Header
from firebase_admin import auth as fb_auth, credentials as fb_credentials
from firebase_admin.exceptions import FirebaseError

from config import Settings, get_settings
from errors import AuthenticationError, AuthorizationError

logger = logging.getLogger(__name__)


class Role(str, Enum):
    ADMIN = "admin"
    NUTRITIONIST = "nutritionist"
    END_USER = "end-user"


DEFAULT_ROLE = Role.END_USER


@dataclass(frozen=True)
class Identity:
    uid: str
    email: Optional[str] = None
    claims: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CurrentUser:
    uid: str
    email: Optional[str]
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


RoleStrategy = Callable[[Identity], Optional[Role]]


def parse_role(value: Any) -> Optional[Role]:
    try:
        return Role(value)
    except ValueError:
        return None


def role_from_claims(identity: Identity) -> Optional[Role]:
    return parse_role(identity.claims.get("role"))


def admin_email_strategy(admin_emails: Iterable[str]) -> RoleStrategy:
    allowlist = {email.strip().lower() for email in admin_emails}

    def role_from_admin_email(identity: Identity) -> Optional[Role]:
        if identity.email and identity.email.lower() in allowlist:
            return Role.ADMIN
        return None

    return role_from_admin_email


def metadata_strategy(load_metadata: Callable[[str], Optional[Mapping[str, Any]]]) -> RoleStrategy:
    def role_from_metadata(identity: Identity) -> Optional[Role]:
        metadata = load_metadata(identity.uid) or {}
        return parse_role(metadata.get("role"))

    return role_from_metadata


def resolve_role(identity: Identity, strategies: Iterable[RoleStrategy], default: Role = DEFAULT_ROLE) -> Role:
    for strategy in strategies:
        role = strategy(identity)
        if role is not None:
            return role
    return default


# --- Firebase ---

def init_firebase(settings: Settings) -> None:
    if firebase_admin._apps:
        return
    if not settings.firebase_service_account_json:
        logger.warning("FIREBASE_SERVICE_ACCOUNT_JSON not set; authenticated endpoints will reject requests")
        return
    try:
        cred = fb_credentials.Certificate(json.loads(settings.firebase_service_account_json))
        firebase_admin.initialize_app(cred)
    except (ValueError, OSError) as e:
        logger.error("Firebase initialization failed: %s", e)


def load_firebase_custom_claims(uid: str) -> Optional[Dict[str, Any]]:
    try:
        return fb_auth.get_user(uid).custom_claims
    except (FirebaseError, ValueError) as e:
        logger.warning("Could not load custom claims for %s: %s", uid, e)
        return None


def get_identity(authorization: Optional[str] = Header(None)) -> Identity:
    """Verify Firebase ID token from Authorization: Bearer <token>."""
    if not authorization:
        raise AuthenticationError("Missing Authorization header")
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthenticationError("Invalid Authorization header")
    try:
        decoded = fb_auth.verify_id_token(parts[1])
    except (FirebaseError, ValueError) as e:
        logger.info("Rejected ID token: %s", e)
        raise AuthenticationError("Invalid token") from e
    return Identity(uid=decoded["uid"], email=decoded.get("email"), claims=decoded)


def get_role_strategies(settings: Settings = Depends(get_settings)) -> list:
    return [
        role_from_claims,
        admin_email_strategy(settings.admin_emails),
        metadata_strategy(load_firebase_custom_claims),
    ]


def get_current_user(
    identity: Identity = Depends(get_identity),
    strategies: list = Depends(get_role_strategies),
) -> CurrentUser:
    role = resolve_role(identity, strategies)
    logger.debug("Resolved role %s for %s", role.value, identity.uid)
    return CurrentUser(uid=identity.uid, email=identity.email, role=role)


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise AuthorizationError()
    return user
