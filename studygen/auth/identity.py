"""Caller identity passed from the auth layer into the services."""

from dataclasses import dataclass
from typing import Optional

from studygen.db.models import CallerType, Plan


@dataclass(frozen=True)
class CallerIdentity:
    """Either an authenticated user or an anonymous session, never both."""

    caller_type: CallerType
    caller_id: str
    plan: str = Plan.FREE.value

    @classmethod
    def user(cls, user_id: str, plan: str = Plan.FREE.value) -> "CallerIdentity":
        return cls(CallerType.AUTHENTICATED, user_id, plan)

    @classmethod
    def session(cls, session_id: str) -> "CallerIdentity":
        return cls(CallerType.ANONYMOUS, session_id, Plan.FREE.value)

    @property
    def is_authenticated(self) -> bool:
        return self.caller_type == CallerType.AUTHENTICATED

    @property
    def user_id(self) -> Optional[str]:
        return self.caller_id if self.is_authenticated else None

    @property
    def session_id(self) -> Optional[str]:
        return None if self.is_authenticated else self.caller_id
