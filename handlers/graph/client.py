# ================================================================
# File     : client.py
# Purpose  : Read-only Microsoft Graph client (app-only, msal)
# Notes    : GET only. Follows @odata.nextLink, sleeps on 429 for
#            Retry-After, refreshes an expired token once on 401 and
#            retries 5xx / connection errors with backoff.
# ================================================================

import time
import getpass
from typing import Dict, Any, Iterator, List, Optional

import msal
import requests

from core.utils import fncPrintMessage, fncRetry

GRAPH_ROOT = "https://graph.microsoft.com/v1.0"
DEFAULT_AUTHORITY = "https://login.microsoftonline.com"
GRAPH_SCOPE = ["https://graph.microsoft.com/.default"]
MAX_THROTTLE_RETRIES = 5
DEFAULT_RETRY_AFTER = 5
REFRESH_MARGIN_SECS = 300


class GraphAuthError(Exception):
    """msal could not issue an access token."""


class GraphRequestError(Exception):
    """Graph answered with a non-2xx status."""

    def __init__(self, status: int, text: str = "", url: str = ""):
        self.status = status
        self.text = text
        self.url = url
        super().__init__(f"Graph API request failed with status {status}: {text[:500]}")


class GraphServerError(GraphRequestError):
    """5xx; retried."""


def _prompt_missing(tenant_id: Optional[str], client_id: Optional[str],
                    client_secret: Optional[str]) -> Dict[str, str]:
    """Ask on the terminal for whatever the config did not supply."""
    if not tenant_id:
        tenant_id = input("Enter Tenant ID: ").strip()
    if not client_id:
        client_id = input("Enter Application (Client) ID: ").strip()
    if not client_secret:
        fncPrintMessage("No client secret configured; it is only kept in memory for this run.", "warn")
        client_secret = getpass.getpass("Enter Client Secret (input hidden): ").strip()
    return {"tenant_id": tenant_id, "client_id": client_id, "client_secret": client_secret}


def _retry_after(response: requests.Response) -> int:
    try:
        return int(response.headers.get("Retry-After", DEFAULT_RETRY_AFTER))
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER


def _is_expired_token(response: requests.Response) -> bool:
    try:
        err = (response.json() or {}).get("error") or {}
    except ValueError:
        return False
    return "InvalidAuthenticationToken" in str(err.get("code") or "") \
        or "expired" in str(err.get("message") or "").lower()


class GraphClient:
    """
    App-only Graph reader. Needs Organization.Read.All (or
    Directory.Read.All), User.Read.All, Group.Read.All and, for sign-in
    activity, AuditLog.Read.All.
    """

    def __init__(
        self,
        tenant_id: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        authority: str = DEFAULT_AUTHORITY,
        timeout: int = 60,
    ):
        creds = _prompt_missing(tenant_id, client_id, client_secret)
        self.tenant_id = creds["tenant_id"]
        self.client_id = creds["client_id"]
        self.timeout = timeout
        self.authority = f"{(authority or DEFAULT_AUTHORITY).rstrip('/')}/{self.tenant_id}"

        fncPrintMessage("Initialising Microsoft Graph (read-only) client...", "info")
        self.app = msal.ConfidentialClientApplication(
            client_id=self.client_id,
            client_credential=creds["client_secret"],
            authority=self.authority,
        )

        self.token = ""
        self._expires_at = 0
        self._refresh_token()
        fncPrintMessage("GraphClient ready.", "success")

    # ---------- tokens ----------

    def _refresh_token(self) -> None:
        fncPrintMessage("Requesting Microsoft Graph access token...", "debug")
        result = self.app.acquire_token_silent(GRAPH_SCOPE, account=None) \
            or self.app.acquire_token_for_client(scopes=GRAPH_SCOPE)
        if "access_token" not in result:
            reason = result.get("error_description") or result.get("error") or "Unknown error"
            fncPrintMessage(f"Authentication failed: {reason}", "error")
            raise GraphAuthError(f"Failed to acquire access token: {reason}")

        self.token = result["access_token"]
        try:
            self._expires_at = int(result.get("expires_on") or 0)
        except (TypeError, ValueError):
            self._expires_at = 0
        if not self._expires_at:
            self._expires_at = int(time.time()) + int(result.get("expires_in", 3600))

    def _token_is_stale(self) -> bool:
        return time.time() >= self._expires_at - REFRESH_MARGIN_SECS

    # ---------- HTTP ----------

    def _send(self, url: str, params: Optional[Dict[str, Any]],
              headers: Optional[Dict[str, str]]) -> requests.Response:
        merged = {"Authorization": f"Bearer {self.token}", "Accept": "application/json", **(headers or {})}
        return requests.request("GET", url, headers=merged, params=params, timeout=self.timeout)

    def _request(self, url: str, params: Optional[Dict[str, Any]] = None,
                 headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """One GET, absorbing throttling and a single token refresh."""
        if self._token_is_stale():
            fncPrintMessage("Access token close to expiry; refreshing.", "debug")
            self._refresh_token()

        refreshed = False
        throttled = 0
        while True:
            resp = self._send(url, params, headers)
            if resp.status_code == 429 and throttled < MAX_THROTTLE_RETRIES:
                throttled += 1
                wait = _retry_after(resp)
                fncPrintMessage(f"Throttled by Graph; waiting {wait}s ({throttled}/{MAX_THROTTLE_RETRIES}).", "warn")
                time.sleep(wait)
                continue
            if resp.status_code == 401 and not refreshed and _is_expired_token(resp):
                fncPrintMessage("Access token expired; refreshing and trying again.", "warn")
                self._refresh_token()
                refreshed = True
                continue
            return self._decode(resp, url)

    @staticmethod
    def _decode(response: requests.Response, url: str = "") -> Dict[str, Any]:
        status = response.status_code
        if 200 <= status < 300:
            return response.json() if status != 204 and response.content else {}
        fncPrintMessage(f"Graph API error [{status}] {url} -> {response.text[:300]}", "debug")
        error_cls = GraphServerError if status >= 500 else GraphRequestError
        raise error_cls(status, response.text, url)

    def _get_with_retry(self, url: str, params: Optional[Dict[str, Any]] = None,
                        headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        return fncRetry(
            lambda: self._request(url, params=params, headers=headers),
            exceptions=(GraphServerError, requests.ConnectionError, requests.Timeout),
        )

    @staticmethod
    def _url(endpoint: str) -> str:
        return f"{GRAPH_ROOT}/{endpoint.strip().lstrip('/')}"

    # ---------- public ----------

    def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None,
            headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """Single GET; the raw JSON body ({} for 204)."""
        url = self._url(endpoint)
        fncPrintMessage(f"GET {url}", "debug")
        return self._get_with_retry(url, params=params, headers=headers)

    def iter_pages(self, endpoint: str, params: Optional[Dict[str, Any]] = None,
                   headers: Optional[Dict[str, str]] = None) -> Iterator[Dict[str, Any]]:
        """Yield each page body, following @odata.nextLink (which already carries the query)."""
        url: Optional[str] = self._url(endpoint)
        while url:
            fncPrintMessage(f"GET (paged) {url}", "debug")
            page = self._get_with_retry(url, params=params, headers=headers)
            yield page
            url = page.get("@odata.nextLink") if isinstance(page, dict) else None
            params = None

    def get_all(self, endpoint: str, params: Optional[Dict[str, Any]] = None,
                headers: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        """
        Every item of a collection endpoint, across pages. A single-object
        endpoint (no "value") comes back as a one-item list.
        """
        items: List[Dict[str, Any]] = []
        for page in self.iter_pages(endpoint, params=params, headers=headers):
            if not isinstance(page, dict):
                break
            if "value" not in page:
                return [page]
            items.extend(page.get("value") or [])
        return items
