"""
HTTP client for the remote POS service.

Covers the three endpoints the offline client depends on:
  GET  <catalog>  product list (bare array or {success, products})
  GET  <users>    worker directory ({success, users})
  POST <sales>    sale ingestion ({success, id?, message?})

Any transport error, timeout, non-2xx status or unreadable body is raised as
RemoteUnavailable so callers can fall back to local data or stop a sync cycle.
"""
import logging
from typing import Any, Dict, Optional

import requests

import offline_config as cfg

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    'Cache-Control': 'no-cache, no-store, max-age=0',
    'Pragma': 'no-cache',
}


class RemoteUnavailable(Exception):
    """Raised when the remote service cannot be reached or answers unusably."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


def _error_message_from_response(resp: requests.Response) -> str:
    try:
        j = resp.json()
        if isinstance(j, dict):
            return j.get('message') or j.get('error') or resp.text[:200]
    except ValueError:
        pass
    return resp.text[:200]


class PosApiClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
        catalog_path: Optional[str] = None,
        sales_path: Optional[str] = None,
        users_path: Optional[str] = None,
        health_path: Optional[str] = None,
    ):
        self.base_url = (base_url or cfg.API_BASE).rstrip('/')
        self.timeout = timeout or cfg.HTTP_TIMEOUT
        self.catalog_path = catalog_path or cfg.CATALOG_PATH
        self.sales_path = sales_path or cfg.SALES_PATH
        self.users_path = users_path or cfg.USERS_PATH
        self.health_path = health_path or cfg.HEALTH_PATH
        self.session = session or requests.Session()
        self.session.headers.update({'Accept': 'application/json'})

    def url(self, path: str) -> str:
        if not path.startswith('/'):
            path = '/' + path
        return self.base_url + path

    def _request_json(self, method: str, path: str, **kwargs) -> Any:
        url = self.url(path)
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise RemoteUnavailable(f"{method} {url} failed: {exc}") from exc
        if not 200 <= resp.status_code < 300:
            raise RemoteUnavailable(
                f"{method} {url} returned HTTP {resp.status_code}: {_error_message_from_response(resp)}",
                status=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise RemoteUnavailable(f"{method} {url} returned a non-JSON body", status=resp.status_code) from exc

    def fetch_products(self) -> Any:
        return self._request_json('GET', self.catalog_path, headers=NO_CACHE_HEADERS)

    def fetch_users(self) -> Any:
        return self._request_json('GET', self.users_path, headers=NO_CACHE_HEADERS)

    def post_sale(self, sale: Dict[str, Any]) -> Dict[str, Any]:
        """Submit one sale; the server treats ``invoiceId`` as its idempotency key."""
        body = self._request_json('POST', self.sales_path, json=sale,
                                  headers={'Content-Type': 'application/json'})
        if not isinstance(body, dict):
            raise RemoteUnavailable(f"Malformed sales response for {sale.get('invoiceId')}: {body!r}"[:300])
        return body

    def ping(self) -> bool:
        """True when the service answers at all (anything below HTTP 500).

        A 4xx from the health path still counts as reachable; it is logged at
        debug level since it usually means POS_HEALTH_PATH points at the wrong route.
        """
        try:
            resp = self.session.get(self.url(self.health_path), timeout=min(self.timeout, 5.0),
                                    headers=NO_CACHE_HEADERS)
        except requests.RequestException as exc:
            logger.debug("Ping %s failed: %s", self.base_url, exc)
            return False
        if 400 <= resp.status_code < 500:
            logger.debug("Ping %s answered HTTP %s; treating the service as reachable",
                         self.url(self.health_path), resp.status_code)
        return resp.status_code < 500
