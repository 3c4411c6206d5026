"""OAuth 2.0 credential handling for the Gmail API."""

from __future__ import annotations

import logging
from datetime import UTC

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import Resource, build

from mail_ingestor.core.exceptions import AuthError, TransientProviderError
from mail_ingestor.core.models import AccountCredentials

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/gmail.modify"]


def build_access_credentials(creds: AccountCredentials) -> Credentials:
    """Wrap a stored access token for API calls.

    The refresh token is left out so the client library cannot rotate tokens
    on its own; an expired token surfaces as an error and the credential
    manager performs the refresh.
    """
    return Credentials(token=creds.access_token or None, scopes=SCOPES)


def refresh_access_token(
    creds: AccountCredentials,
    *,
    client_id: str,
    client_secret: str,
    token_uri: str,
) -> AccountCredentials:
    """Exchange the refresh token for a new access token.

    Args:
        creds: Current credential snapshot (must carry a refresh token).
        client_id: OAuth client id.
        client_secret: OAuth client secret.
        token_uri: Token endpoint.

    Returns:
        The next credential version carrying the new tokens.

    Raises:
        AuthError: If the refresh token is missing, invalid or revoked.
        TransientProviderError: If the token endpoint could not be reached.
    """
    if not creds.refresh_token:
        raise AuthError(f"No refresh token stored for {creds.email}")

    google_creds = Credentials(
        token=None,
        refresh_token=creds.refresh_token,
        token_uri=token_uri,
        client_id=client_id,
        client_secret=client_secret,
        scopes=SCOPES,
    )
    try:
        google_creds.refresh(Request())
    except RefreshError as e:
        raise AuthError(f"Token refresh rejected for {creds.email}: {e}") from e
    except TransportError as e:
        raise TransientProviderError(f"Token endpoint unreachable: {e}") from e

    expiry = google_creds.expiry
    if expiry is not None and expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=UTC)

    logger.info("Refreshed Gmail OAuth token for %s", creds.email)
    return creds.with_tokens(google_creds.token, google_creds.refresh_token, expiry)


def build_gmail_service(creds: Credentials) -> Resource:
    """Build a Gmail API service resource.

    Args:
        creds: Google OAuth2 credentials.

    Returns:
        Gmail API service resource.
    """
    return build("gmail", "v1", credentials=creds, cache_discovery=False)
