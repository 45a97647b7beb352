"""
Zoom API Service

This service handles all Zoom API interactions including OAuth 2.0 authentication,
listing meetings, fetching recordings and transcripts, and downloading media files.
``ZoomCredentialService`` owns the stored OAuth tokens for each user and hands
out valid access tokens, refreshing them when they are about to expire.
"""

import time
import logging
import asyncio
import base64
import weakref
from datetime import date, datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, Optional
from urllib.parse import quote, urlencode

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from services.repository import parse_timestamp
from utils.config import Settings
from utils.errors import NotFoundError, ReauthRequired, UpstreamError, ZoomAuthRequired

logger = logging.getLogger(__name__)

ZOOM_SCOPES = "meeting:read recording:read user:read"
DEFAULT_TOKEN_TTL = 3600
DOWNLOAD_CHUNK_SIZE = 64 * 1024


class ZoomRateLimiter:
    """Client-side pacing so bursts stay under Zoom's per-second limits."""

    def __init__(self, min_interval: float = 0.02):
        self.min_interval = min_interval
        self.last_call = 0.0
        self._lock = asyncio.Lock()

    async def wait_if_needed(self):
        async with self._lock:
            elapsed = time.monotonic() - self.last_call
            if elapsed < self.min_interval:
                await asyncio.sleep(self.min_interval - elapsed)
            self.last_call = time.monotonic()


class ZoomAPIError(UpstreamError):
    """A Zoom call failed for a reason other than authorization."""

    code = "ZOOM_API_ERROR"
    default_message = "Zoom API request failed"

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None, error_code: Optional[str] = None):
        super().__init__(message)
        self.upstream_status = status_code
        self.error_code = error_code


class ZoomRateLimitError(ZoomAPIError):
    default_message = "Zoom rate limit exceeded"


class ZoomService:
    """Service for interacting with Zoom APIs."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.client_id = settings.zoom_client_id
        self.client_secret = settings.zoom_client_secret
        self.redirect_uri = settings.zoom_redirect_uri
        self.base_url = settings.zoom_api_base_url.rstrip("/")
        self.oauth_base_url = settings.zoom_oauth_base_url.rstrip("/")
        self.request_timeout = settings.zoom_request_timeout
        self.download_timeout = settings.zoom_download_timeout
        self.max_attempts = max(1, settings.zoom_rate_limit_retries)
        self.backoff = settings.zoom_rate_limit_backoff
        self.rate_limiter = ZoomRateLimiter()
        self._transport = transport

    def _client(self, timeout: float, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport, **kwargs)

    def _require_configuration(self):
        if not all([self.client_id, self.client_secret, self.redirect_uri]):
            raise ValueError("Missing required Zoom configuration. Check ZOOM_CLIENT_ID, ZOOM_CLIENT_SECRET, and ZOOM_REDIRECT_URI environment variables.")

    # -- OAuth ---------------------------------------------------------------

    def get_authorization_url(self, state: str) -> str:
        """Generate Zoom OAuth authorization URL."""
        self._require_configuration()
        params = {
            'response_type': 'code',
            'client_id': self.client_id,
            'redirect_uri': self.redirect_uri,
            'scope': ZOOM_SCOPES,
            'state': state,
        }
        return f"{self.oauth_base_url}/authorize?{urlencode(params)}"

    async def _token_request(self, data: Dict[str, str]) -> httpx.Response:
        self._require_configuration()
        await self.rate_limiter.wait_if_needed()

        credentials = f"{self.client_id}:{self.client_secret}"
        encoded_credentials = base64.b64encode(credentials.encode()).decode()
        headers = {
            'Authorization': f'Basic {encoded_credentials}',
            'Content-Type': 'application/x-www-form-urlencoded'
        }

        try:
            async with self._client(self.request_timeout) as client:
                return await client.post(f"{self.oauth_base_url}/token", headers=headers, data=data)
        except httpx.HTTPError as e:
            logger.error(f"Zoom token endpoint unreachable: {e}")
            raise ZoomAPIError("Zoom authorization service is unavailable")

    async def exchange_code_for_tokens(self, code: str) -> Dict[str, Any]:
        """Exchange authorization code for access and refresh tokens."""
        response = await self._token_request({
            'grant_type': 'authorization_code',
            'code': code,
            'redirect_uri': self.redirect_uri,
        })

        if response.status_code != 200:
            logger.error(f"Token exchange failed: {response.status_code} - {response.text}")
            if response.status_code in (400, 401):
                raise ZoomAuthRequired("Zoom rejected the authorization code")
            raise ZoomAPIError("Failed to exchange code for tokens", status_code=response.status_code)

        return response.json()

    async def refresh_access_token(self, refresh_token: str) -> Dict[str, Any]:
        """Refresh access token using refresh token."""
        response = await self._token_request({
            'grant_type': 'refresh_token',
            'refresh_token': refresh_token,
        })

        if response.status_code != 200:
            logger.error(f"Token refresh failed: {response.status_code} - {response.text}")
            if response.status_code in (400, 401):
                raise ReauthRequired()
            raise ZoomAPIError("Failed to refresh Zoom token", status_code=response.status_code)

        return response.json()

    # -- REST ----------------------------------------------------------------

    async def _send(self, method: str, endpoint: str, access_token: str, params: Optional[Dict] = None) -> httpx.Response:
        await self.rate_limiter.wait_if_needed()
        headers = {
            'Authorization': f'Bearer {access_token}',
            'Content-Type': 'application/json'
        }
        try:
            async with self._client(self.request_timeout) as client:
                response = await client.request(method, f"{self.base_url}{endpoint}", headers=headers, params=params)
        except httpx.HTTPError as e:
            logger.error(f"Zoom request {method} {endpoint} failed: {e}")
            raise ZoomAPIError("Zoom API is unavailable")

        if response.status_code == 429:
            logger.warning(f"Zoom rate limit hit on {endpoint}")
            raise ZoomRateLimitError(status_code=429)
        return response

    async def _make_authenticated_request(
        self,
        method: str,
        endpoint: str,
        access_token: str,
        params: Optional[Dict] = None,
        allow_not_found: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """Make authenticated request to Zoom API, backing off on rate limits."""
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(ZoomRateLimitError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff, max=60),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                response = await self._send(method, endpoint, access_token, params)

        if response.status_code == 401:
            raise ReauthRequired()
        if response.status_code == 404 and allow_not_found:
            return None
        if response.status_code == 404:
            raise NotFoundError("Zoom resource not found")
        if response.status_code >= 400:
            logger.error(f"Zoom API error on {endpoint}: {response.status_code} - {response.text}")
            error_code = None
            if response.headers.get('content-type', '').startswith('application/json'):
                error_code = response.json().get('code')
            raise ZoomAPIError(status_code=response.status_code, error_code=error_code)

        if not response.content:
            return {}
        return response.json()

    async def get_user_info(self, access_token: str) -> Dict[str, Any]:
        """Get current user information."""
        return await self._make_authenticated_request('GET', '/users/me', access_token)

    async def list_meetings(
        self,
        access_token: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        page_size: int = 300,
        next_page_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """List one page of the user's meetings."""
        params: Dict[str, Any] = {'type': 'previous_meetings', 'page_size': page_size}
        if from_date:
            params['from'] = from_date.strftime('%Y-%m-%d')
        if to_date:
            params['to'] = to_date.strftime('%Y-%m-%d')
        if next_page_token:
            params['next_page_token'] = next_page_token

        data = await self._make_authenticated_request('GET', '/users/me/meetings', access_token, params=params)
        return {
            'meetings': data.get('meetings', []),
            'next_page_token': data.get('next_page_token') or None,
        }

    async def iter_meetings(
        self,
        access_token: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        page_size: int = 300,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield every meeting across all pages."""
        token = None
        while True:
            page = await self.list_meetings(access_token, from_date, to_date, page_size, token)
            for meeting in page['meetings']:
                yield meeting
            token = page['next_page_token']
            if not token:
                break

    async def get_meeting_recordings(self, meeting_id: str, access_token: str) -> Dict[str, Any]:
        """Get recordings for a specific meeting."""
        return await self._make_authenticated_request(
            'GET',
            f'/meetings/{_encode_meeting_id(meeting_id)}/recordings',
            access_token
        )

    async def get_meeting_transcript(self, meeting_id: str, access_token: str) -> Optional[Dict[str, Any]]:
        """Get the transcript for a meeting, or ``None`` when Zoom has none."""
        return await self._make_authenticated_request(
            'GET',
            f'/meetings/{_encode_meeting_id(meeting_id)}/transcript',
            access_token,
            allow_not_found=True,
        )

    async def stream_recording_file(self, download_url: str, access_token: str) -> AsyncIterator[bytes]:
        """Yield a recording file from Zoom in chunks as it downloads."""
        await self.rate_limiter.wait_if_needed()

        headers = {
            'Authorization': f'Bearer {access_token}'
        }

        try:
            async with self._client(self.download_timeout, follow_redirects=True) as client:
                async with client.stream('GET', download_url, headers=headers) as response:
                    if response.status_code == 401:
                        raise ReauthRequired()
                    if response.status_code != 200:
                        raise ZoomAPIError(
                            f"Failed to download recording: {response.status_code}",
                            status_code=response.status_code
                        )
                    async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                        yield chunk
        except httpx.HTTPError as e:
            logger.error(f"Recording download failed: {e}")
            raise ZoomAPIError(f"Download failed: {e.__class__.__name__}")


def _encode_meeting_id(meeting_id: str) -> str:
    # Meeting UUIDs may contain "/" and must be double encoded.
    meeting_id = str(meeting_id)
    if meeting_id.startswith('/') or '//' in meeting_id:
        return quote(quote(meeting_id, safe=''), safe='')
    return quote(meeting_id, safe='')


class ZoomCredentialService:
    """Service for managing each user's stored Zoom credentials."""

    def __init__(self, repository, zoom_service: ZoomService, refresh_leeway: int = 60):
        self.repository = repository
        self.zoom_service = zoom_service
        self.refresh_leeway = timedelta(seconds=refresh_leeway)
        # Entries vanish once no request holds or waits on the lock.
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    def _token_fields(self, token_data: Dict[str, Any], previous_refresh_token: Optional[str] = None) -> Dict[str, Any]:
        expires_in = token_data.get('expires_in') or DEFAULT_TOKEN_TTL
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
        return {
            'access_token': token_data['access_token'],
            # Zoom rotates refresh tokens; the old one is dead once a new one is issued.
            'refresh_token': token_data.get('refresh_token') or previous_refresh_token,
            'token_expires_at': expires_at.isoformat(),
        }

    async def store_credentials(
        self,
        user_id: str,
        token_data: Dict[str, Any],
        zoom_user_id: Optional[str] = None,
        zoom_email: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Store Zoom credentials for a user and mark the account connected."""
        data = self._token_fields(token_data)
        data.update({
            'zoom_user_id': zoom_user_id,
            'zoom_email': zoom_email,
            'zoom_connected': True,
        })
        return self.repository.update_user(user_id, data)

    async def clear_credentials(self, user_id: str) -> None:
        """Forget the user's Zoom tokens."""
        self.repository.update_user(user_id, {
            'access_token': None,
            'refresh_token': None,
            'token_expires_at': None,
            'zoom_user_id': None,
            'zoom_email': None,
            'zoom_connected': False,
        })
        logger.info(f"Cleared Zoom credentials for user {user_id}")

    def is_token_expired(self, credentials: Dict[str, Any]) -> bool:
        """Missing expiry counts as expired."""
        expires_at = parse_timestamp(credentials.get('token_expires_at'))
        if expires_at is None:
            return True
        return expires_at <= datetime.now(timezone.utc) + self.refresh_leeway

    def connection_status(self, user: Dict[str, Any]) -> Dict[str, Any]:
        if not user.get('zoom_connected'):
            return {'connected': False}
        return {
            'connected': True,
            'zoom_email': user.get('zoom_email'),
            'zoom_user_id': user.get('zoom_user_id'),
            'token_expired': self.is_token_expired(user),
            'token_expires_at': parse_timestamp(user.get('token_expires_at')),
        }

    async def get_valid_access_token(self, user_id: str) -> str:
        """Get a valid access token, refreshing if necessary."""
        credentials = self.repository.get_user(user_id)
        if not credentials or not credentials.get('access_token'):
            raise ZoomAuthRequired()
        if not self.is_token_expired(credentials):
            return credentials['access_token']

        async with self._lock_for(user_id):
            # Another request may have refreshed while we waited on the lock.
            credentials = self.repository.get_user(user_id)
            if not credentials or not credentials.get('access_token'):
                raise ZoomAuthRequired()
            if not self.is_token_expired(credentials):
                return credentials['access_token']

            refresh_token = credentials.get('refresh_token')
            if not refresh_token:
                raise ReauthRequired()

            logger.info(f"Refreshing Zoom access token for user {user_id}")
            token_data = await self.zoom_service.refresh_access_token(refresh_token)
            self.repository.update_user(user_id, self._token_fields(token_data, refresh_token))
            return token_data['access_token']
