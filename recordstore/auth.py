import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

import httpx
from jose import jwt

from recordstore.errors import AuthenticationError

logger = logging.getLogger(__name__)

TOKEN_PATH = "/services/oauth2/token"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"


@dataclass(frozen=True)
class AccessToken:
    access_token: str
    instance_url: str
    issued_at: float


class TokenProvider:
    """
    Acquires and caches an OAuth2 access token for the record store.

    Uses the JWT-bearer grant when a private key and username are configured,
    the client-credentials grant otherwise.
    """

    def __init__(
        self,
        login_url: str,
        client_id: str,
        client_secret: Optional[str] = None,
        username: Optional[str] = None,
        private_key: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
        assertion_ttl_seconds: int = 180,
    ):
        if not private_key and not client_secret:
            raise ValueError("either private_key or client_secret is required")
        if private_key and not username:
            raise ValueError("username is required for the JWT bearer grant")

        self.login_url = login_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.username = username
        self.private_key = private_key
        self.assertion_ttl_seconds = assertion_ttl_seconds
        self._http = http or httpx.AsyncClient(timeout=10.0)
        self._owns_http = http is None
        self._token: Optional[AccessToken] = None
        self._lock = asyncio.Lock()

    def _build_assertion(self) -> str:
        claims = {
            "iss": self.client_id,
            "sub": self.username,
            "aud": self.login_url,
            "exp": int(time.time()) + self.assertion_ttl_seconds,
        }
        return jwt.encode(claims, self.private_key, algorithm="RS256")

    def _grant_form(self) -> dict[str, str]:
        if self.private_key:
            return {"grant_type": JWT_BEARER_GRANT, "assertion": self._build_assertion()}
        return {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }

    async def _fetch(self) -> AccessToken:
        try:
            resp = await self._http.post(f"{self.login_url}{TOKEN_PATH}", data=self._grant_form())
        except httpx.HTTPError as e:
            raise AuthenticationError(f"Token request failed: {e}") from e

        if resp.status_code != 200:
            try:
                body = resp.json()
                detail = body.get("error_description") or body.get("error") or resp.text
            except ValueError:
                detail = resp.text
            raise AuthenticationError(f"Token request rejected: {detail}", status_code=resp.status_code)

        data = resp.json()
        token = AccessToken(
            access_token=data["access_token"],
            instance_url=(data.get("instance_url") or self.login_url).rstrip("/"),
            issued_at=time.time(),
        )
        logger.info("Obtained record store access token for instance %s", token.instance_url)
        return token

    async def get_token(self, stale: Optional[AccessToken] = None) -> AccessToken:
        """
        Returns the cached token, fetching one if there is none or if the
        cached token is `stale` (the one a caller just saw rejected).
        """
        async with self._lock:
            # Another caller may have refreshed while we waited for the lock
            if self._token is not None and self._token is not stale:
                return self._token
            self._token = await self._fetch()
            return self._token

    def invalidate(self, token: Optional[AccessToken] = None) -> None:
        """Drops the cached token, or only `token` if it is still the cached one."""
        if token is None or self._token is token:
            self._token = None

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()
