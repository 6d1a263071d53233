"""
OAuth token management for the remote practice-management API.

Keeps the current access token in memory, refreshes it shortly before it
expires (or when the API answers 401) and, when a session factory is
available, persists it to the oauth_tokens table so a refreshed token
survives restarts.
"""

from datetime import datetime, timedelta
from typing import Optional
import asyncio
import logging

import httpx
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from core.config import settings
from core.exceptions import AuthenticationError, TokenRefreshError
from models.base import utc_now
from models.oauth_token import OAuthToken
from schemas.remote import ensure_utc

logger = logging.getLogger(__name__)


class TokenManager:
    """
    Bearer token provider with refresh support.

    Attributes:
        expiry_buffer: Tokens expiring within this window are refreshed first
        default_expires_in: Lifetime assumed when the token endpoint omits expires_in
    """

    PROVIDER = "practicepanther"

    def __init__(
        self,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        token_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        session_factory=None,
        timeout: Optional[float] = None
    ):
        self._access_token = access_token
        self._refresh_token = refresh_token
        self._expires_at = ensure_utc(expires_at) if expires_at else None
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url or settings.PP_TOKEN_URL
        self.http_client = http_client
        self.session_factory = session_factory
        self.timeout = timeout or settings.REQUEST_TIMEOUT

        self.expiry_buffer = timedelta(minutes=5)
        self.default_expires_in = 86400
        self._stored_checked = False
        self._refresh_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, session_factory=None) -> "TokenManager":
        return cls(
            access_token=settings.PP_ACCESS_TOKEN,
            refresh_token=settings.PP_REFRESH_TOKEN,
            client_id=settings.PP_CLIENT_ID,
            client_secret=settings.PP_CLIENT_SECRET,
            session_factory=session_factory,
        )

    def _is_expiring(self) -> bool:
        if self._expires_at is None:
            return False
        return self._expires_at <= utc_now() + self.expiry_buffer

    async def get_access_token(self) -> str:
        """
        Return a usable access token, refreshing it when close to expiry.

        Concurrent callers share one refresh: whoever waits on the lock sees
        the token the first caller obtained.

        Raises:
            AuthenticationError: If no token is configured or stored
            TokenRefreshError: If the refresh request fails
        """
        if not self._stored_checked and self.session_factory is not None:
            self._stored_checked = True
            await self._load_stored()

        if self._access_token and not self._is_expiring():
            return self._access_token

        if self._refresh_token:
            async with self._refresh_lock:
                if self._access_token and not self._is_expiring():
                    return self._access_token
                return await self._refresh()

        if self._access_token:
            logger.warning("Access token is about to expire and no refresh token is configured")
            return self._access_token

        raise AuthenticationError(
            "No access token available for the remote API",
            context={"provider": self.PROVIDER}
        )

    async def refresh(self, rejected_token: Optional[str] = None) -> str:
        """
        Exchange the refresh token for a new access token.

        When rejected_token is given and another caller already replaced it,
        the current token is returned without another round trip. The previous
        refresh token is kept when the endpoint does not return one.
        """
        async with self._refresh_lock:
            if rejected_token is not None and self._access_token and self._access_token != rejected_token:
                return self._access_token
            return await self._refresh()

    async def _refresh(self) -> str:
        if not self._refresh_token:
            raise TokenRefreshError(
                "No refresh token available",
                context={"provider": self.PROVIDER, "token_url": self.token_url}
            )

        form = {"grant_type": "refresh_token", "refresh_token": self._refresh_token}
        if self.client_id:
            form["client_id"] = self.client_id
        if self.client_secret:
            form["client_secret"] = self.client_secret

        try:
            if self.http_client is not None:
                response = await self.http_client.post(self.token_url, data=form, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.token_url, data=form)
        except httpx.HTTPError as e:
            raise TokenRefreshError(
                "Token endpoint unreachable",
                context={"provider": self.PROVIDER, "token_url": self.token_url},
                original_exception=e
            )

        if response.status_code != 200:
            raise TokenRefreshError(
                f"Token refresh rejected with HTTP {response.status_code}",
                context={
                    "provider": self.PROVIDER,
                    "token_url": self.token_url,
                    "status_code": response.status_code,
                    "response_body": response.text[:500],
                }
            )

        try:
            data = response.json()
            access_token = data["access_token"]
        except (ValueError, KeyError, TypeError) as e:
            raise TokenRefreshError(
                "Token endpoint returned an unexpected body",
                context={"provider": self.PROVIDER, "token_url": self.token_url},
                original_exception=e
            )

        expires_in = data.get("expires_in") or self.default_expires_in
        self._access_token = access_token
        self._refresh_token = data.get("refresh_token") or self._refresh_token
        self._expires_at = utc_now() + timedelta(seconds=int(expires_in))

        logger.info(f"Access token refreshed, valid until {self._expires_at.isoformat()}")
        await self._persist(data.get("token_type") or "Bearer")
        return self._access_token

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _load_stored(self) -> None:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(OAuthToken)
                    .where(OAuthToken.provider == self.PROVIDER, OAuthToken.is_active.is_(True))
                    .order_by(OAuthToken.created_at.desc())
                    .limit(1)
                )
                stored = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.warning(f"Could not load stored OAuth token: {e}")
            return

        if stored is None:
            return

        stored_expires = ensure_utc(stored.expires_at) if stored.expires_at else None
        # A stored token newer than the configured one wins
        if self._expires_at is None or (stored_expires and stored_expires > self._expires_at):
            self._access_token = stored.access_token
            self._refresh_token = stored.refresh_token or self._refresh_token
            self._expires_at = stored_expires
            logger.info("Loaded stored OAuth token")

    async def _persist(self, token_type: str) -> None:
        if self.session_factory is None:
            return
        try:
            async with self.session_factory() as session:
                await session.execute(
                    update(OAuthToken)
                    .where(OAuthToken.provider == self.PROVIDER, OAuthToken.is_active.is_(True))
                    .values(is_active=False, updated_at=utc_now())
                )
                session.add(OAuthToken(
                    provider=self.PROVIDER,
                    access_token=self._access_token,
                    refresh_token=self._refresh_token,
                    token_type=token_type,
                    expires_at=self._expires_at,
                    is_active=True,
                ))
                await session.commit()
        except SQLAlchemyError as e:
            # The in-memory token stays valid; only persistence is lost
            logger.warning(f"Could not persist refreshed OAuth token: {e}")
