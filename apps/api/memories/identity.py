"""Acting identity for uploads (authenticated or ephemeral)."""

import uuid
from typing import Protocol

from fastapi import Request

EPHEMERAL_PREFIX = "temp-"


class IdentityError(Exception):
    """Raised when the caller cannot be identified."""


class IdentityResolver(Protocol):
    async def resolve(self, request: Request) -> str:
        """Return an opaque owner id or raise IdentityError."""
        ...


class HeaderIdentityResolver:
    """
    Reads the owner id from a trusted header set by the auth gateway.

    Anonymous callers get a fresh ephemeral id when allowed, so onboarding
    uploads still have an owner.
    """

    def __init__(self, header: str = "X-User-Id", allow_ephemeral: bool = True):
        self.header = header
        self.allow_ephemeral = allow_ephemeral

    async def resolve(self, request: Request) -> str:
        owner_id = request.headers.get(self.header, "").strip()
        if owner_id:
            return owner_id
        if self.allow_ephemeral:
            return f"{EPHEMERAL_PREFIX}{uuid.uuid4().hex}"
        raise IdentityError(f"Missing {self.header} header")
