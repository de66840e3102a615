"""Enedis OAuth2 token supplier.

A bearer token is shared by every metering call. The most recent active
token in ``enedis_tokens`` is reused while it is valid; otherwise a new one
is exchanged and stored as the only active row.

Storing a token is two statements (deactivate all, insert new) and is not
atomic. A crash in between leaves no active row; the next ``get_token()``
then simply performs a fresh exchange.

Customer refresh tokens (authorization-code flow) are exchanged on demand
and handed back to the caller without being stored.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from .config import settings
from .errors import CredentialError, PersistenceError, PipelineError, ValidationError
from .models import Credential
from .retry import RetryPolicy, mask_url

logger = logging.getLogger("enedis-collector.auth")


class TokenSupplier:
    """Provides a valid Enedis bearer token.

    Attributes:
        store: persistence gateway holding the enedis_tokens table
        client_id: Enedis application client id
        client_secret: Enedis application client secret
        retry: retry policy for the token exchange
    """

    def __init__(
        self,
        store,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        token_url: Optional[str] = None,
        retry: Optional[RetryPolicy] = None,
        client: Optional[httpx.AsyncClient] = None,
        margin_s: Optional[int] = None,
        history_keep: Optional[int] = None,
    ):
        self.store = store
        self.client_id = client_id if client_id is not None else settings.enedis_client_id
        self.client_secret = client_secret if client_secret is not None else settings.enedis_client_secret
        self.token_url = token_url or settings.enedis_token_url
        self.retry = retry or RetryPolicy(
            attempts=settings.token_retry_attempts,
            base_delay=1.0,
            max_delay=10.0,
            jitter=True,
            not_found_as_empty=False,
            name="enedis-token",
        )
        self.margin_s = margin_s if margin_s is not None else settings.token_expiry_margin_s
        self.history_keep = history_keep if history_keep is not None else settings.token_history_keep
        self.client = client
        self._owns_client = client is None

    async def connect(self):
        """Initialize HTTP client."""
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=settings.enedis_timeout)
            self._owns_client = True

    async def close(self):
        """Close HTTP client."""
        if self.client and self._owns_client:
            await self.client.aclose()
            self.client = None

    async def get_cached(self) -> Optional[Credential]:
        """Active stored token if it is still valid, else None."""
        try:
            row = await self.store.get_active_credential()
        except PersistenceError as e:
            logger.warning(f"Could not read cached token: {e.message}")
            return None

        if not row:
            logger.info("No active token found in database")
            return None

        try:
            credential = Credential.from_row(row)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed token row: {e}")
            return None

        if not credential.is_valid(margin_s=self.margin_s):
            logger.info(f"Cached token expired at {credential.expires_at.isoformat()}")
            return None
        return credential

    async def get_token(self) -> str:
        """Return a bearer token, exchanging a new one if needed.

        Raises:
            CredentialError: if no cached token is usable and the exchange fails
        """
        cached = await self.get_cached()
        if cached:
            logger.debug("Using active token from database")
            return cached.access_token

        try:
            credential = await self.exchange()
        except PipelineError as e:
            raise CredentialError(f"Failed to get API token: {e.message}", details=e.details)

        try:
            await self.persist(credential)
        except PersistenceError as e:
            logger.error(f"Token obtained but not stored: {e.diagnostics()}")
        return credential.access_token

    async def refresh(self) -> Credential:
        """Force a new exchange and store it as the only active token.

        Raises:
            CreationError / TransientFetchError: if the exchange fails
            PersistenceError: if the new token cannot be inserted
        """
        credential = await self.exchange()
        await self.persist(credential)
        return credential

    async def exchange(self) -> Credential:
        """Perform the client-credentials exchange with retry and backoff."""
        await self.connect()
        params = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        if settings.enedis_scope:
            params["scope"] = settings.enedis_scope

        logger.info(f"Requesting client_credentials token from {mask_url(self.token_url)}")
        response = await self.retry.send(
            self.client,
            "POST",
            self.token_url,
            params=params,
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
            },
        )

        try:
            data = response.json()
            credential = Credential.from_token_response(data, now=datetime.now(timezone.utc))
        except (KeyError, TypeError, ValueError) as e:
            raise CredentialError(f"Invalid token response format: {e}", details=response.text[:200])

        logger.info(
            f"Token obtained: type={credential.token_type}, "
            f"expires_in={credential.expires_in}s, scope={data.get('scope')}"
        )
        return credential

    async def persist(self, credential: Credential):
        """Deactivate previous tokens, insert this one, prune old rows."""
        try:
            await self.store.deactivate_credentials()
        except PersistenceError as e:
            # Continue: the insert still makes the new token the newest active row
            logger.error(f"Error deactivating existing tokens: {e.diagnostics()}")

        await self.store.insert_credential(credential.to_row())

        try:
            pruned = await self.store.prune_credentials(keep=self.history_keep)
            if pruned:
                logger.debug(f"Pruned {pruned} old tokens")
        except PersistenceError as e:
            logger.warning(f"Could not clean up old tokens: {e.message}")

        logger.info("Token successfully stored in database")

    async def exchange_refresh_token(self, refresh_token: str) -> dict:
        """Trade a customer refresh token for a new token pair.

        Single attempt; the partner answer is returned as is and not stored.

        Raises:
            ValidationError: no refresh token given
            CredentialError: the partner refused the grant
        """
        if not refresh_token:
            raise ValidationError("refresh_token required", required=["refresh_token"])
        await self.connect()

        logger.info("Refreshing customer token")
        try:
            response = await self.client.post(
                self.token_url,
                data={
                    "grant_type": "refresh_token",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": refresh_token,
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise CredentialError(f"Network error refreshing token: {e}")

        if not response.is_success:
            logger.error(f"Token refresh error: HTTP {response.status_code} - {response.text[:200]}")
            try:
                error = response.json()
            except ValueError:
                error = None
            if not isinstance(error, dict):
                error = {"error": "Unknown error", "error_description": response.text}
            raise CredentialError(
                error.get("error_description") or f"Token refresh failed: HTTP {response.status_code}",
                details=error,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise CredentialError(f"Invalid token response format: {e}", details=response.text[:200])
        logger.info("Customer token refreshed")
        return data
