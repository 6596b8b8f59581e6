"""Identity resolvers: where the current player's stable id comes from."""
from contextvars import ContextVar
from typing import Protocol

from app.core.config import Settings
from app.core.security import subject_from_token

# Bearer token of the request being served (set by the API dependency)
current_access_token: ContextVar[str | None] = ContextVar("current_access_token", default=None)


class IdentityResolver(Protocol):
    async def get_user_id(self) -> str | None:
        """Current principal's id, or None when nobody is signed in."""
        ...


class StaticIdentityResolver:
    """Fixed principal; for CLI tools, tests and single-user devices."""

    def __init__(self, user_id: str | None):
        self.user_id = user_id

    async def get_user_id(self) -> str | None:
        return self.user_id


class TokenIdentityResolver:
    """Reads the access token bound to the current context and returns its subject."""

    def __init__(self, settings: Settings, token_var: ContextVar[str | None] = current_access_token):
        self.settings = settings
        self.token_var = token_var

    async def get_user_id(self) -> str | None:
        return subject_from_token(self.token_var.get(), self.settings)
