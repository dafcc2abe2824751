from dataclasses import dataclass
from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from errors import ForbiddenError, UnauthorizedError
from filters import Scope
from models import User
from soft_delete import live


@dataclass(frozen=True)
class Caller:
    user_id: int
    is_admin: bool = False

    def scope(self, all_owners: bool = False) -> Scope:
        if all_owners:
            if not self.is_admin:
                raise ForbiddenError("Administrator access required")
            return Scope.all()
        return Scope.owner(self.user_id)


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.auth_secret, salt="auth-token")


def issue_token(user_id: int) -> str:
    return _serializer().dumps({"u": user_id})


def read_token(token: str) -> int:
    settings = get_settings()
    try:
        data = _serializer().loads(token, max_age=settings.token_max_age_hours * 3600)
    except BadSignature as exc:
        raise UnauthorizedError("Invalid or expired token") from exc
    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int):
        raise UnauthorizedError("Invalid or expired token")
    return user_id


def authenticate(session: Session, authorization: Optional[str]) -> Caller:
    if not authorization or not authorization.startswith("Bearer "):
        raise UnauthorizedError("Authentication required")
    token = authorization[len("Bearer ") :].strip()
    if not token:
        raise UnauthorizedError("Authentication required")
    user_id = read_token(token)
    user = session.scalar(live(select(User).where(User.id == user_id), User))
    if not user:
        raise UnauthorizedError("User not found")
    return Caller(user_id=user.id, is_admin=user.is_admin)
