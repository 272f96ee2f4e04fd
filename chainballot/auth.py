import logging
from typing import Any

from werkzeug.security import check_password_hash, generate_password_hash

from chainballot.errors import AuthError, Forbidden, StoreDuplicate, ValidationError
from chainballot.models import User
from chainballot.session_utils import create_session_token, verify_session_token

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthService:
    """Password login and bearer tokens. ``verified`` and ``role`` come from the store as-is."""

    def __init__(self, store, secret: str | None = None, ttl_seconds: int = 3600) -> None:
        self.store = store
        self.secret = secret
        self.ttl_seconds = ttl_seconds

    def register(self, name: str, email: str, password: str, role: str = "voter") -> User:
        name = (name or "").strip()
        email = normalize_email(email or "")
        if not name:
            raise ValidationError("Name is required")
        if "@" not in email:
            raise ValidationError("A valid email is required")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
        if role not in ("voter", "admin"):
            raise ValidationError("Role must be voter or admin")
        try:
            user = self.store.create_user(email, name, generate_password_hash(password), role)
        except StoreDuplicate as exc:
            raise ValidationError("User already exists") from exc
        logger.info("Registered %s user %s", role, user.id)
        return user

    def login(self, email: str, password: str, is_admin: bool = False) -> dict[str, Any]:
        if not password:
            raise ValidationError("Password is required")
        found = self.store.get_credentials(normalize_email(email or ""))
        if found is None:
            raise AuthError("Invalid credentials")
        user, password_hash = found
        if not check_password_hash(password_hash, password):
            raise AuthError("Invalid credentials")
        if is_admin and not user.is_admin:
            raise Forbidden("Not authorized as admin")
        token = create_session_token(user.id, user.role, self.ttl_seconds, secret=self.secret)
        return {"token": token, "user": user.to_dict()}

    def get_current_user(self, token: str) -> User:
        try:
            payload = verify_session_token(token, secret=self.secret)
        except ValueError as exc:
            raise AuthError(str(exc)) from exc
        user = self.store.get_user(payload.get("sub", ""))
        if user is None:
            raise AuthError("User no longer exists")
        return user
