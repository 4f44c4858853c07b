"""Connected mailbox models."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field

from receiptsync.utils.dates import ensure_utc, utcnow


class TokenBundle(BaseModel):
    """
    OAuth credentials for one mailbox.

    Only the provider adapters and the token lifecycle manager read these
    values; API responses never include them.
    """

    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """True when the access token expiry instant is at or before ``now``."""
        if self.expires_at is None:
            return False
        now = now or utcnow()
        return ensure_utc(self.expires_at) <= ensure_utc(now)


class EmailProvider(BaseModel):
    """A mailbox connected by a user through OAuth."""

    id: str = Field(default_factory=lambda: f"prov_{uuid.uuid4().hex[:16]}")
    user_id: int
    provider_type: str
    email: EmailStr
    tokens: TokenBundle = Field(repr=False)
    needs_reauth: bool = False
    reauth_reason: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class AuthorizedAccount(BaseModel):
    """Result of exchanging an OAuth authorization code."""

    email: EmailStr
    tokens: TokenBundle = Field(repr=False)
