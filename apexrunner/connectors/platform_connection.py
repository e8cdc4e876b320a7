"""
Platform Connection

Thin async REST/Tooling API client for a Salesforce org built on httpx, with
one transparent re-authentication when the session has expired.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from apexrunner.config import settings
from apexrunner.errors import AuthError, TransportError, classify_transport_error

logger = logging.getLogger(__name__)

RefreshCallback = Callable[[], Awaitable[Optional[str]]]

# sObject Collections accepts at most 200 records per request.
COLLECTION_CHUNK_SIZE = 200


def _is_session_expired(response: httpx.Response) -> bool:
    if response.status_code == 401:
        return True
    return "INVALID_SESSION_ID" in response.text


def _error_details(response: httpx.Response) -> tuple[Optional[str], str]:
    """Pull (errorCode, message) out of a platform error body."""
    try:
        body = response.json()
    except ValueError:
        return None, response.text or response.reason_phrase
    if isinstance(body, list) and body and isinstance(body[0], dict):
        body = body[0]
    if isinstance(body, dict):
        return body.get("errorCode"), str(body.get("message") or body)
    return None, str(body)


class PlatformConnection:
    """
    Authenticated connection to one org.

    The access token is opaque to this class; when a request fails because the
    session expired, `refresh` is awaited once and the request is replayed.
    """

    def __init__(
        self,
        instance_url: str,
        access_token: Optional[str] = None,
        api_version: str = "61.0",
        *,
        username: Optional[str] = None,
        org_id: Optional[str] = None,
        user_id: Optional[str] = None,
        refresh: Optional[RefreshCallback] = None,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.instance_url = instance_url.rstrip("/")
        self.access_token = access_token
        self.api_version = api_version
        self.username = username
        self.org_id = org_id
        self.user_id = user_id
        self._refresh = refresh
        self.transport = transport
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @property
    def data_base_url(self) -> str:
        return f"{self.instance_url}/services/data/v{self.api_version}"

    @property
    def tooling_base_url(self) -> str:
        return f"{self.data_base_url}/tooling"

    def _base(self, tooling: bool) -> str:
        return self.tooling_base_url if tooling else self.data_base_url

    async def refresh_auth(self) -> Optional[str]:
        """Await the refresh callback (if any) and adopt the returned token."""
        if self._refresh is None:
            return self.access_token
        token = await self._refresh()
        if token:
            self.access_token = token
        return self.access_token

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        if not self.access_token:
            raise AuthError("No access token available for the org connection.")
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    async def _send(
        self,
        method: str,
        url: str,
        json: Any,
        headers: Optional[Dict[str, str]],
    ) -> httpx.Response:
        try:
            return await self._client.request(
                method, url, json=json, headers=self._headers(headers)
            )
        except httpx.HTTPError as e:
            failure = classify_transport_error(e)
            raise TransportError(
                failure.message if failure else f"{method} {url} failed: {e}",
                error_code=failure.code if failure else None,
            ) from e

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """
        Send a request and return the decoded JSON body (None when empty).

        Relative urls are resolved against the instance url. A request that
        fails with an expired session is replayed exactly once after
        `refresh_auth`; a second failure raises TransportError.
        """
        if not url.startswith("http"):
            url = f"{self.instance_url}{url}"

        response = await self._send(method, url, json, headers)
        if _is_session_expired(response):
            logger.info("Session expired, refreshing auth and retrying %s", url)
            await self.refresh_auth()
            response = await self._send(method, url, json, headers)
            if _is_session_expired(response):
                error_code, message = _error_details(response)
                raise TransportError(
                    f"Session expired after re-authentication: {message}",
                    status_code=response.status_code,
                    error_code=error_code or "INVALID_SESSION_ID",
                )

        if response.status_code >= 400:
            error_code, message = _error_details(response)
            raise TransportError(
                message, status_code=response.status_code, error_code=error_code
            )
        if not response.content:
            return None
        return response.json()

    async def query(self, soql: str, tooling: bool = False) -> Dict[str, Any]:
        url = f"{self._base(tooling)}/query?{urlencode({'q': soql})}"
        logger.debug("Query: %s", soql)
        return await self.request("GET", url)

    async def query_more(self, next_records_url: str) -> Dict[str, Any]:
        return await self.request("GET", next_records_url)

    async def create(
        self, sobject: str, record: Dict[str, Any], tooling: bool = False
    ) -> Dict[str, Any]:
        return await self.request(
            "POST", f"{self._base(tooling)}/sobjects/{sobject}", json=record
        )

    async def update(
        self, sobject: str, records: List[Dict[str, Any]], tooling: bool = False
    ) -> List[Dict[str, Any]]:
        """
        Update records through the sObject Collections endpoint.

        Records are sent in chunks of COLLECTION_CHUNK_SIZE, one request at a
        time, with `allOrNone` off so one bad record does not roll back the
        rest. Returns the per-record `{id, success, errors}` results in input
        order.
        """
        results: List[Dict[str, Any]] = []
        url = f"{self._base(tooling)}/composite/sobjects"
        for start in range(0, len(records), COLLECTION_CHUNK_SIZE):
            chunk = records[start : start + COLLECTION_CHUNK_SIZE]
            body = {
                "allOrNone": False,
                "records": [{"attributes": {"type": sobject}, **r} for r in chunk],
            }
            results.extend(await self.request("PATCH", url, json=body) or [])

        failed = [r for r in results if not r.get("success")]
        if failed:
            logger.warning(
                "%d of %d %s updates failed: %s",
                len(failed),
                len(records),
                sobject,
                [r.get("id") for r in failed],
            )
        return results

    async def aclose(self) -> None:
        await self._client.aclose()


# Global connection instance
_default_connection: Optional[PlatformConnection] = None


def get_default_connection() -> PlatformConnection:
    """
    Get or create the connection described by the SF_* settings.

    Returns:
        PlatformConnection: Default connection instance
    """
    global _default_connection

    if _default_connection is None:
        _default_connection = PlatformConnection(
            instance_url=settings.SF_INSTANCE_URL,
            access_token=settings.SF_ACCESS_TOKEN,
            api_version=settings.SF_API_VERSION,
            username=settings.SF_USERNAME,
            org_id=settings.SF_ORG_ID,
            user_id=settings.SF_USER_ID,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )
        logger.info(
            "Initialized org connection: %s@%s (api v%s)",
            settings.SF_USERNAME,
            settings.SF_INSTANCE_URL,
            settings.SF_API_VERSION,
        )

    return _default_connection


async def close_default_connection():
    """Close the default connection."""
    global _default_connection
    if _default_connection is not None:
        await _default_connection.aclose()
        _default_connection = None
