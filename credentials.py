import asyncio
import datetime
import json
import os
from dataclasses import dataclass, replace

from google.auth.transport.requests import AuthorizedSession, Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from config import CLIENT_SECRET_PATH, SCOPES, TOKEN_REFRESH_MARGIN_SECONDS, TOKEN_URI
from errors import AuthExpired
from utils import debug_print, to_utc, utc_now

USERINFO_URL = 'https://openidconnect.googleapis.com/v1/userinfo'


@dataclass(frozen=True)
class AccountCredential:
    """Delegated credentials for one account, as kept by the credential store."""

    account_id: int
    email: str
    access_token: str
    refresh_token: str | None = None
    expiry: datetime.datetime | None = None

    def is_live(self, now=None, margin_seconds=TOKEN_REFRESH_MARGIN_SECONDS) -> bool:
        """True when the access token can be used as-is for at least `margin_seconds`."""
        if not self.access_token or self.expiry is None:
            return False
        now = now or utc_now()
        return to_utc(self.expiry) > now + datetime.timedelta(seconds=margin_seconds)


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    expiry: datetime.datetime | None = None


class GoogleOAuthClient:
    """Token exchange and refresh against Google's OAuth2 endpoints."""

    def __init__(self, client_secret_path: str = CLIENT_SECRET_PATH, scopes=None):
        self.client_secret_path = client_secret_path
        self.scopes = scopes or SCOPES
        self._client_info = None

    def _load_client_info(self) -> tuple[str, str]:
        """Read client id/secret from the Cloud Console JSON (installed or web app)."""
        if self._client_info is None:
            if not os.path.exists(self.client_secret_path):
                raise FileNotFoundError(f"Client secret file not found at '{self.client_secret_path}'")
            with open(self.client_secret_path) as f:
                data = json.load(f)
            app = data.get('installed') or data.get('web')
            if not app:
                raise ValueError("Invalid client secret format. Expected 'installed' or 'web' key.")
            self._client_info = (app['client_id'], app['client_secret'])
        return self._client_info

    def _refresh_blocking(self, refresh_token: str) -> TokenGrant:
        client_id, client_secret = self._load_client_info()
        creds = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=TOKEN_URI,
            client_id=client_id,
            client_secret=client_secret,
            scopes=self.scopes,
        )
        creds.refresh(Request())
        # google-auth reports expiry as naive UTC
        return TokenGrant(access_token=creds.token, expiry=to_utc(creds.expiry))

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new access token."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._refresh_blocking, refresh_token)

    def authorize(self) -> Credentials:
        """Run the installed-app consent flow in a local browser."""
        if not os.path.exists(self.client_secret_path):
            raise FileNotFoundError(f"Client secret file not found at '{self.client_secret_path}'")
        flow = InstalledAppFlow.from_client_secrets_file(self.client_secret_path, self.scopes)
        # offline access + consent so Google always hands back a refresh token
        return flow.run_local_server(port=0, access_type='offline', prompt='consent')

    def fetch_profile(self, creds: Credentials) -> dict:
        """Return the signed-in user's OpenID profile (email, name)."""
        response = AuthorizedSession(creds).get(USERINFO_URL)
        response.raise_for_status()
        return response.json()


async def ensure_live_token(credential: AccountCredential, store, oauth_client, now=None) -> str:
    """Return an access token that is good for at least the refresh margin.

    A live stored token is returned without any network call. Otherwise the
    refresh token is exchanged and the result written back to `store` before
    returning. Any refresh failure surfaces as AuthExpired; concurrent callers
    may both refresh, the last save wins.
    """
    if credential.is_live(now=now):
        return credential.access_token

    if not credential.refresh_token:
        raise AuthExpired("Missing refresh token. Re-authentication is required")

    try:
        grant = await oauth_client.refresh(credential.refresh_token)
    except Exception as e:  # revoked grant, network, malformed response
        debug_print(f"Token refresh for {credential.email} failed: {type(e).__name__}: {e}")
        raise AuthExpired("Failed to refresh access token") from None

    if not grant or not grant.access_token:
        raise AuthExpired("Failed to refresh access token")

    refreshed = replace(
        credential,
        access_token=grant.access_token,
        expiry=grant.expiry or credential.expiry,
    )
    await store.save_credential(refreshed)
    return refreshed.access_token
