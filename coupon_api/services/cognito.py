"""
Cognito JWT validation for coupon API callers.

Customers and administrators both sign in through the same Cognito user
pool; administrators are told apart by membership of the configured admin
group, which Cognito puts in the ``cognito:groups`` claim.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx
from cachetools import TTLCache
from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError

from coupon_api.config import get_settings

logger = logging.getLogger(__name__)

JWKS_CACHE_KEY = "jwks"
ACCEPTED_TOKEN_USES = ("id", "access")


class CognitoService:
    """
    Validates Cognito tokens and turns them into caller identities.

    The JWKS document is cached for an hour so most requests never leave
    the process.
    """

    def __init__(self):
        self.settings = get_settings()
        self._jwks_cache: TTLCache = TTLCache(maxsize=1, ttl=3600)
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=10.0)
        return self._http_client

    async def _fetch_jwks(self) -> Dict[str, Any]:
        """
        Return the user pool's signing keys, from cache when possible.

        Raises:
            RuntimeError: If the keys cannot be downloaded.
        """
        cached = self._jwks_cache.get(JWKS_CACHE_KEY)
        if cached is not None:
            return cached

        try:
            client = await self._client()
            response = await client.get(self.settings.cognito_jwks_url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to fetch JWKS: {e}")
            raise RuntimeError(f"Failed to fetch JWKS from Cognito: {e}")

        jwks = response.json()
        self._jwks_cache[JWKS_CACHE_KEY] = jwks
        logger.info("Fetched and cached Cognito JWKS")
        return jwks

    @staticmethod
    def _find_key(jwks: Dict[str, Any], token: str) -> Optional[Dict[str, Any]]:
        """Pick the JWK whose ``kid`` matches the token header."""
        try:
            kid = jwt.get_unverified_header(token).get("kid")
        except JWTError as e:
            logger.warning(f"Unreadable token header: {e}")
            return None

        if not kid:
            logger.warning("Token missing 'kid' header")
            return None

        key = next((k for k in jwks.get("keys", []) if k.get("kid") == kid), None)
        if key is None:
            logger.warning(f"No matching key found for kid: {kid}")
        return key

    async def validate_token(self, token: str) -> Dict[str, Any]:
        """
        Verify signature, expiry, audience and issuer of a token.

        Returns:
            The decoded claims.

        Raises:
            ValueError: If the token is invalid, expired, or verification fails.
        """
        key = self._find_key(await self._fetch_jwks(), token)
        if not key:
            raise ValueError("Unable to find appropriate signing key")

        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=["RS256"],
                audience=self.settings.cognito_client_id,
                issuer=self.settings.cognito_issuer,
                options={"require_exp": True, "require_sub": True},
            )
        except ExpiredSignatureError:
            logger.warning("Token has expired")
            raise ValueError("Token has expired")
        except JWTError as e:
            logger.warning(f"JWT validation failed: {e}")
            raise ValueError(f"Token validation failed: {e}")

        if claims.get("token_use") not in ACCEPTED_TOKEN_USES:
            raise ValueError(f"Invalid token_use: {claims.get('token_use')}")

        return claims

    async def get_user_info(self, token: str) -> Dict[str, Any]:
        """
        Validate a token and extract the caller identity.

        Returns:
            Dict with ``sub``, ``email`` and ``groups`` (list of Cognito
            group names, possibly empty).

        Raises:
            ValueError: If validation fails or ``sub`` is missing.
        """
        claims = await self.validate_token(token)

        sub = claims.get("sub")
        if not sub:
            raise ValueError("Token missing 'sub' claim")

        groups: List[str] = list(claims.get("cognito:groups") or [])

        return {
            "sub": sub,
            "email": claims.get("email") or claims.get("cognito:username", ""),
            "groups": groups,
        }

    async def close(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()


# Global service instance
cognito_service = CognitoService()
