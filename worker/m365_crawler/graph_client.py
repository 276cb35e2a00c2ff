import os
import random
import threading
import time
from typing import Any, Dict, Iterator, Optional, Sequence

import requests
from msal import ConfidentialClientApplication

from m365_crawler.errors import FatalCrawlError, GraphError
from m365_crawler.pagination import ContinuationCursor, Page, graph_page, walk
from m365_crawler.retry import RetryPolicy
from m365_crawler.runtime_logger import emit


DEFAULT_GRAPH_BASE = "https://graph.microsoft.com/v1.0"
GRAPH_SCOPES = ["https://graph.microsoft.com/.default"]
GRAPH_PAGE_SIZE = int(os.getenv("GRAPH_PAGE_SIZE", "200"))

USER_KIND_SELECT = ("id",)
USER_NAME_SELECT = ("id", "userPrincipalName", "mail")
GROUP_NAME_SELECT = ("id", "displayName", "mail", "mailNickname")
GROUP_LIST_SELECT = ("id", "displayName", "mail", "groupTypes", "visibility")
DRIVE_SELECT = ("id", "name", "driveType", "webUrl", "owner")
DRIVE_ITEM_SELECT = (
    "id",
    "name",
    "description",
    "webUrl",
    "size",
    "file",
    "folder",
    "createdDateTime",
    "lastModifiedDateTime",
    "parentReference",
    "deleted",
)
PERMISSION_SELECT = (
    "id",
    "roles",
    "link",
    "inheritedFrom",
    "grantedTo",
    "grantedToV2",
    "grantedToIdentities",
    "grantedToIdentitiesV2",
)


class MsalTokenProvider:
    def __init__(
        self,
        tenant_id: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
    ):
        tenant_id = tenant_id or os.getenv("ENTRA_TENANT_ID")
        client_id = client_id or os.getenv("ENTRA_CLIENT_ID")
        client_secret = client_secret or os.getenv("ENTRA_CLIENT_SECRET")
        if not tenant_id or not client_id or not client_secret:
            raise FatalCrawlError("ENTRA_TENANT_ID/ENTRA_CLIENT_ID/ENTRA_CLIENT_SECRET must be set")

        self._cca = ConfidentialClientApplication(
            client_id,
            authority=f"https://login.microsoftonline.com/{tenant_id}",
            client_credential=client_secret,
        )
        self._token_lock = threading.Lock()
        self._cached_token: Optional[str] = None
        self._cached_token_expires_at: float = 0.0

    def get_token(self) -> str:
        now = time.time()
        if self._cached_token and now < (self._cached_token_expires_at - 60):
            return self._cached_token

        with self._token_lock:
            now = time.time()
            if self._cached_token and now < (self._cached_token_expires_at - 60):
                return self._cached_token

            result = self._cca.acquire_token_silent(GRAPH_SCOPES, account=None)
            if not result:
                result = self._cca.acquire_token_for_client(scopes=GRAPH_SCOPES)
            access_token = result.get("access_token")
            if not access_token:
                emit("ERROR", "GRAPH", f"Graph token acquisition failed: error={result.get('error')}")
                raise FatalCrawlError("Failed to acquire Graph token")

            expires_in = result.get("expires_in")
            if isinstance(expires_in, (int, float)):
                self._cached_token_expires_at = time.time() + float(expires_in)
            else:
                self._cached_token_expires_at = time.time() + 55 * 60
            self._cached_token = access_token
            return access_token

    def invalidate(self):
        with self._token_lock:
            self._cached_token = None
            self._cached_token_expires_at = 0.0


def _select(fields: Sequence[str]) -> str:
    return ",".join(fields)


class GraphClient:
    """Microsoft Graph transport plus the collection endpoints the crawlers walk.

    Transport errors are retried with exponential backoff and a 401 refreshes
    the token once. HTTP failure classes are raised as ``GraphError`` and are
    handled by the ``RetryPolicy`` wrapped around every call.
    """

    def __init__(self, token_provider=None, retry_policy: Optional[RetryPolicy] = None):
        self._graph_base = os.getenv("GRAPH_BASE", DEFAULT_GRAPH_BASE).rstrip("/")
        self._max_transport_retries = int(os.getenv("GRAPH_MAX_TRANSPORT_RETRIES", "3"))
        self._connect_timeout = float(os.getenv("GRAPH_CONNECT_TIMEOUT", "10"))
        self._read_timeout = float(os.getenv("GRAPH_READ_TIMEOUT", "60"))
        self._token_provider = token_provider
        self.retry_policy = retry_policy or RetryPolicy()

    @property
    def base_url(self) -> str:
        return self._graph_base

    @property
    def token_provider(self):
        if self._token_provider is None:
            self._token_provider = MsalTokenProvider()
        return self._token_provider

    def check_credentials(self):
        try:
            self.token_provider.get_token()
        except FatalCrawlError:
            raise
        except Exception as exc:
            raise FatalCrawlError(f"Graph credential check failed: {exc}") from exc

    def close(self):
        emit("DEBUG", "GRAPH", "Graph client closed")

    def _build_url(self, path_or_url: str) -> str:
        if path_or_url.startswith("http://") or path_or_url.startswith("https://"):
            return path_or_url
        if not path_or_url.startswith("/"):
            path_or_url = "/" + path_or_url
        return f"{self._graph_base}{path_or_url}"

    def _send(self, method: str, url: str, *, json: Any = None) -> requests.Response:
        backoff = 1.0
        refreshed = False
        attempt = 0
        while True:
            attempt += 1
            token = self.token_provider.get_token()
            headers = {"Authorization": f"Bearer {token}"}
            try:
                resp = requests.request(
                    method,
                    url,
                    headers=headers,
                    json=json,
                    timeout=(self._connect_timeout, self._read_timeout),
                )
            except requests.RequestException as exc:
                if attempt > self._max_transport_retries:
                    emit("ERROR", "GRAPH", f"Graph request failed: method={method} url={url} error={exc}")
                    raise
                emit(
                    "WARN",
                    "GRAPH",
                    f"Graph request retrying after transport error: method={method} url={url} attempt={attempt}/{self._max_transport_retries + 1} error={exc}",
                )
                time.sleep(backoff + random.uniform(0, 0.25))
                backoff = min(backoff * 2, 30)
                continue

            if resp.status_code == 401 and not refreshed:
                refreshed = True
                self.token_provider.invalidate()
                emit("WARN", "GRAPH", f"Graph request retrying after 401: method={method} url={url}")
                continue
            return resp

    def _raise_for_status(self, method: str, url: str, resp: requests.Response):
        if resp.ok:
            return
        text = resp.text or ""
        message = text[:400] if text else "request_failed"
        level = "DEBUG" if resp.status_code == 404 else "WARN"
        emit(level, "GRAPH", f"Graph request failed with status={resp.status_code}: method={method} url={url} error={message}")
        raise GraphError(resp.status_code, message, url, text, resp.headers.get("Retry-After"))

    def _request_once(self, method: str, url: str, *, json: Any = None) -> Dict[str, Any]:
        resp = self._send(method, url, json=json)
        self._raise_for_status(method, url, resp)
        if resp.status_code == 204:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            emit("ERROR", "GRAPH", f"Graph response invalid JSON: method={method} url={url}")
            raise GraphError(resp.status_code, "invalid_json", url, resp.text or "") from exc

    def request_json(self, method: str, path_or_url: str, *, json: Any = None) -> Optional[Dict[str, Any]]:
        url = self._build_url(path_or_url)
        return self.retry_policy.call(
            lambda: self._request_once(method, url, json=json),
            description=f"{method} {url}",
        )

    def get_json(self, path_or_url: str) -> Optional[Dict[str, Any]]:
        return self.request_json("GET", path_or_url)

    def get_bytes(self, path_or_url: str) -> Optional[bytes]:
        url = self._build_url(path_or_url)

        def fetch() -> bytes:
            resp = self._send("GET", url)
            self._raise_for_status("GET", url, resp)
            return resp.content

        return self.retry_policy.call(fetch, description=f"GET {url}")

    def get_page(self, path_or_url: str) -> Optional[Page]:
        return graph_page(self.get_json(path_or_url))

    def next_page(self, cursor: ContinuationCursor) -> Optional[Page]:
        return graph_page(self.get_json(cursor.token))

    def iter_paged(self, path_or_url: str) -> Iterator[Dict[str, Any]]:
        return walk(lambda: self.get_page(path_or_url), self.next_page)

    # Directory

    def get_user(self, user_id: str, select: Sequence[str] = USER_NAME_SELECT) -> Optional[Dict[str, Any]]:
        return self.get_json(f"/users/{user_id}?$select={_select(select)}")

    def get_group(self, group_id: str, select: Sequence[str] = GROUP_NAME_SELECT) -> Optional[Dict[str, Any]]:
        return self.get_json(f"/groups/{group_id}?$select={_select(select)}")

    def iter_users(self, select: Sequence[str] = USER_NAME_SELECT) -> Iterator[Dict[str, Any]]:
        return self.iter_paged(f"/users?$select={_select(select)}&$top={GRAPH_PAGE_SIZE}")

    def iter_groups(self, select: Sequence[str] = GROUP_LIST_SELECT) -> Iterator[Dict[str, Any]]:
        return self.iter_paged(f"/groups?$select={_select(select)}&$top={GRAPH_PAGE_SIZE}")

    # Drives

    def get_drive(self, drive_id: str) -> Optional[Dict[str, Any]]:
        return self.get_json(f"/drives/{drive_id}?$select={_select(DRIVE_SELECT)}")

    def get_user_drive(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self.get_json(f"/users/{user_id}/drive?$select={_select(DRIVE_SELECT)}")

    def iter_site_drives(self, site_id: str) -> Iterator[Dict[str, Any]]:
        return self.iter_paged(f"/sites/{site_id}/drives?$select={_select(DRIVE_SELECT)}")

    def iter_drive_children(self, drive_id: str, item_id: Optional[str] = None) -> Iterator[Dict[str, Any]]:
        parent = f"items/{item_id}" if item_id else "root"
        return self.iter_paged(
            f"/drives/{drive_id}/{parent}/children?$select={_select(DRIVE_ITEM_SELECT)}&$top={GRAPH_PAGE_SIZE}"
        )

    def get_drive_item_content(self, drive_id: str, item_id: str) -> Optional[bytes]:
        return self.get_bytes(f"/drives/{drive_id}/items/{item_id}/content")

    # Permissions

    def iter_drive_item_permissions(self, drive_id: str, item_id: str) -> Iterator[Dict[str, Any]]:
        return self.iter_paged(f"/drives/{drive_id}/items/{item_id}/permissions?$select={_select(PERMISSION_SELECT)}")
