"""Outbound authentication for webhook deliveries.

Each authentication method has its own strategy. ``AuthProvider.sign`` picks
the strategy from ``subscription.authentication.method`` and returns the
headers (and basic auth tuple) to attach to the request.
"""

import asyncio
import hashlib
import hmac
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional, Tuple

import httpx
import structlog

from .base import (
    AuthMethod,
    ConfigurationError,
    DeliveryFailure,
    HmacAlgorithm,
    Subscription,
    utcnow,
)

logger = structlog.get_logger(__name__)


_DIGESTS = {
    HmacAlgorithm.SHA256: hashlib.sha256,
    HmacAlgorithm.SHA512: hashlib.sha512,
}


def compute_signature(
    secret: str,
    body: bytes,
    algorithm: HmacAlgorithm = HmacAlgorithm.SHA256,
) -> str:
    """
    Compute the hex HMAC of a request body.

    Args:
        secret: The webhook signing secret
        body: The exact bytes sent on the wire
        algorithm: sha256 or sha512

    Returns:
        Hex digest
    """
    return hmac.new(
        secret.encode("utf-8"),
        body,
        _DIGESTS[HmacAlgorithm(algorithm)],
    ).hexdigest()


def verify_signature(
    secret: str,
    body: bytes,
    signature: str,
    algorithm: HmacAlgorithm = HmacAlgorithm.SHA256,
) -> bool:
    """Constant-time check of a received signature (for receivers and tests)."""
    expected = compute_signature(secret, body, algorithm)
    return hmac.compare_digest(expected, signature)


@dataclass
class RequestAugmentation:
    """Authentication material to merge into an outbound request."""

    headers: Dict[str, str] = field(default_factory=dict)
    auth: Optional[Tuple[str, str]] = None


# =============================================================================
# OAuth2
# =============================================================================


class TokenProvider(ABC):
    """Source of OAuth2 access tokens for a subscription."""

    @abstractmethod
    async def get_token(self, subscription: Subscription) -> str:
        pass

    def invalidate(self, subscription_id: str) -> None:
        """Drop any cached token for a subscription."""
        return None


@dataclass
class _CachedToken:
    access_token: str
    expires_at: datetime


class ClientCredentialsTokenProvider(TokenProvider):
    """
    OAuth2 client-credentials token provider.

    Tokens are cached per subscription until ``refresh_margin_seconds``
    before they expire.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        refresh_margin_seconds: int = 30,
        clock: Optional[Callable[[], datetime]] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = client
        self._owns_client = client is None
        self._refresh_margin = timedelta(seconds=refresh_margin_seconds)
        self._clock = clock or utcnow
        self._timeout = timeout
        self._transport = transport
        self._tokens: Dict[str, _CachedToken] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._client

    async def get_token(self, subscription: Subscription) -> str:
        lock = self._locks.setdefault(subscription.id, asyncio.Lock())
        async with lock:
            cached = self._tokens.get(subscription.id)
            if cached and self._clock() < cached.expires_at - self._refresh_margin:
                return cached.access_token

            token = await self._fetch(subscription)
            self._tokens[subscription.id] = token
            return token.access_token

    async def _fetch(self, subscription: Subscription) -> _CachedToken:
        oauth2 = subscription.authentication.oauth2
        credentials = subscription.authentication.credentials
        if not oauth2.token_url or not credentials.client_id or not credentials.client_secret:
            raise ConfigurationError(
                "OAuth2 requires token_url, client_id and client_secret",
            )

        data = {
            "grant_type": oauth2.grant_type,
            "client_id": credentials.client_id,
            "client_secret": credentials.client_secret,
        }
        if oauth2.scope:
            data["scope"] = oauth2.scope

        client = await self._get_client()
        try:
            response = await client.post(oauth2.token_url, data=data)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            raise DeliveryFailure(
                f"OAuth2 token request failed: {e.response.status_code}",
                status_code=e.response.status_code,
            )
        except (httpx.HTTPError, ValueError) as e:
            raise DeliveryFailure(f"OAuth2 token request failed: {e}")

        access_token = body.get("access_token")
        if not access_token:
            raise DeliveryFailure("OAuth2 token response has no access_token")

        expires_in = int(body.get("expires_in", 3600))
        logger.info(
            "oauth2_token_fetched",
            subscription_id=subscription.id,
            expires_in=expires_in,
        )
        return _CachedToken(
            access_token=access_token,
            expires_at=self._clock() + timedelta(seconds=expires_in),
        )

    def invalidate(self, subscription_id: str) -> None:
        self._tokens.pop(subscription_id, None)

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


# =============================================================================
# Auth provider
# =============================================================================


class AuthProvider:
    """
    Computes per-delivery authentication material.

    Usage:
        provider = AuthProvider(token_provider=ClientCredentialsTokenProvider())
        augmentation = await provider.sign(subscription, body)
    """

    def __init__(self, token_provider: Optional[TokenProvider] = None):
        self.token_provider = token_provider
        self._strategies: Dict[
            AuthMethod,
            Callable[[Subscription, bytes], Awaitable[RequestAugmentation]],
        ] = {
            AuthMethod.NONE: self._sign_none,
            AuthMethod.BASIC: self._sign_basic,
            AuthMethod.BEARER: self._sign_bearer,
            AuthMethod.HMAC: self._sign_hmac,
            AuthMethod.OAUTH2: self._sign_oauth2,
            AuthMethod.CUSTOM: self._sign_custom,
        }

    async def sign(self, subscription: Subscription, body: bytes) -> RequestAugmentation:
        """
        Build the authentication material for one request.

        Args:
            subscription: The subscription being delivered to
            body: Serialized request body (signed as is for HMAC)

        Raises:
            ConfigurationError: If the method lacks its secret material
        """
        strategy = self._strategies[subscription.authentication.method]
        return await strategy(subscription, body)

    async def _sign_none(self, subscription: Subscription, body: bytes) -> RequestAugmentation:
        return RequestAugmentation()

    async def _sign_basic(self, subscription: Subscription, body: bytes) -> RequestAugmentation:
        credentials = subscription.authentication.credentials
        if not credentials.username:
            raise ConfigurationError("Basic authentication requires a username")
        return RequestAugmentation(auth=(credentials.username, credentials.password or ""))

    async def _sign_bearer(self, subscription: Subscription, body: bytes) -> RequestAugmentation:
        token = subscription.authentication.credentials.token
        if not token:
            raise ConfigurationError("Bearer authentication requires a token")
        return RequestAugmentation(headers={"Authorization": f"Bearer {token}"})

    async def _sign_hmac(self, subscription: Subscription, body: bytes) -> RequestAugmentation:
        config = subscription.authentication.hmac
        if not config.secret:
            raise ConfigurationError("HMAC secret not configured")
        signature = compute_signature(config.secret, body, config.algorithm)
        return RequestAugmentation(headers={config.header_name: signature})

    async def _sign_oauth2(self, subscription: Subscription, body: bytes) -> RequestAugmentation:
        if self.token_provider is None:
            raise ConfigurationError("OAuth2 authentication requires a token provider")
        token = await self.token_provider.get_token(subscription)
        return RequestAugmentation(headers={"Authorization": f"Bearer {token}"})

    async def _sign_custom(self, subscription: Subscription, body: bytes) -> RequestAugmentation:
        return RequestAugmentation(headers=dict(subscription.authentication.custom_headers))
