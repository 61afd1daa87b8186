"""
Local-first catalog and worker directory.

Both caches follow the same rule: fetch from the remote service, fully replace
the local collection on success, and serve whatever is cached when the fetch
fails for any reason.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from offline_store import PRODUCTS, USERS, LocalStore
from pos_api import PosApiClient, RemoteUnavailable

logger = logging.getLogger(__name__)

_PRIVATE_USER_FIELDS = ('password', 'password_hash')


def _as_number(value: Any) -> float:
    if value in (None, '', False):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    return int(number) if number.is_integer() else number


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def canonical_product(entry: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(entry, dict) or entry.get('id') in (None, ''):
        return None
    status = str(entry.get('status') or 'active').strip().lower()
    return {
        'id': entry['id'],
        'name': str(entry.get('name') or entry['id']),
        'qty': _optional_text(entry.get('qty')),
        'stock': _as_number(entry.get('stock')),
        'price': _as_number(entry.get('price')),
        'category': _optional_text(entry.get('category')),
        'barcode': _optional_text(entry.get('barcode')),
        'image': _optional_text(entry.get('image')),
        'status': 'deleted' if status == 'deleted' else 'active',
    }


def normalize_products(body: Any) -> Optional[List[Dict[str, Any]]]:
    """Canonical product list from either response shape, or None if unrecognized."""
    if isinstance(body, list):
        raw = body
    elif isinstance(body, dict) and body.get('success') and isinstance(body.get('products'), list):
        raw = body['products']
    else:
        return None
    products = []
    for entry in raw:
        product = canonical_product(entry)
        if product is None:
            logger.warning("Dropping catalog entry without an id: %r", entry)
            continue
        products.append(product)
    return products


def normalize_users(body: Any) -> Optional[List[Dict[str, Any]]]:
    if isinstance(body, list):
        raw = body
    elif isinstance(body, dict) and body.get('success') and isinstance(body.get('users'), list):
        raw = body['users']
    else:
        return None
    users = []
    for entry in raw:
        if not isinstance(entry, dict) or not entry.get('username'):
            continue
        users.append({k: v for k, v in entry.items() if k not in _PRIVATE_USER_FIELDS})
    return users


def find_by_barcode(products: Iterable[Dict[str, Any]], code: Any) -> Optional[Dict[str, Any]]:
    wanted = str(code or '').strip()
    if not wanted:
        return None
    for product in products:
        if product.get('barcode') is not None and str(product['barcode']) == wanted:
            return product
    return None


class CatalogCache:
    def __init__(self, store: LocalStore, client: PosApiClient):
        self.store = store
        self.client = client

    def load_catalog(self) -> List[Dict[str, Any]]:
        """Fresh catalog from the server, or the cached copy when that fails. Never raises."""
        try:
            body = self.client.fetch_products()
        except RemoteUnavailable as exc:
            logger.info("Catalog fetch failed, serving cached products: %s", exc)
            return self.cached()
        except Exception:
            logger.exception("Unexpected catalog fetch failure, serving cached products")
            return self.cached()
        products = normalize_products(body)
        if products is None:
            logger.warning("No valid product data from API, serving cached products")
            return self.cached()
        try:
            self.store.replace_all(PRODUCTS, products)
        except Exception:
            logger.exception("Failed to refresh the local product cache")
        return products

    def cached(self) -> List[Dict[str, Any]]:
        try:
            return self.store.get_all(PRODUCTS)
        except Exception:
            logger.exception("Failed to load cached products")
            return []

    def find_by_barcode(self, code: Any) -> Optional[Dict[str, Any]]:
        return find_by_barcode(self.cached(), code)


class UserDirectory:
    def __init__(self, store: LocalStore, client: PosApiClient):
        self.store = store
        self.client = client

    def load_users(self) -> List[Dict[str, Any]]:
        try:
            body = self.client.fetch_users()
        except RemoteUnavailable as exc:
            logger.info("User directory fetch failed, serving cached users: %s", exc)
            return self.cached()
        except Exception:
            logger.exception("Unexpected user directory failure, serving cached users")
            return self.cached()
        users = normalize_users(body)
        if users is None:
            logger.warning("No valid user data from API, serving cached users")
            return self.cached()
        try:
            self.store.replace_all(USERS, users)
        except Exception:
            logger.exception("Failed to cache the user directory")
        return users

    def cached(self) -> List[Dict[str, Any]]:
        try:
            return self.store.get_all(USERS)
        except Exception:
            logger.exception("Failed to load cached users")
            return []

    def get_user(self, username: str) -> Optional[Dict[str, Any]]:
        if not username:
            return None
        try:
            return self.store.get(USERS, username)
        except Exception:
            logger.exception("Failed to load cached user %s", username)
            return None
