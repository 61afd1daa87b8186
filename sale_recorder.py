"""
Cart and sale finalization.

A finalized sale is written to the local store (unsynced) before the caller
hears about it; syncing to the server happens later and separately.
"""
import logging
import sqlite3
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Optional
from uuid import uuid4

import offline_config as cfg
from catalog_cache import find_by_barcode
from offline_store import LocalStore, StoreOpenError, iso_now

logger = logging.getLogger(__name__)

PAYMENT_MODES = ('Cash', 'UPI')
_CENT = Decimal('0.01')


class EmptyCartError(ValueError):
    """Raised when finalizing a cart with no lines."""


class CartError(ValueError):
    """Unknown product, bad quantity or not enough stock."""


class SaleSaveError(Exception):
    """The sale could not be written to the local store."""


def _dec(value: Any) -> Decimal:
    try:
        number = Decimal(str(value if value not in (None, '') else 0))
    except InvalidOperation as exc:
        raise ValueError(f"Not a number: {value!r}") from exc
    if not number.is_finite():
        raise ValueError(f"Not a finite number: {value!r}")
    return number


def _money(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def _clamp_percent(value: Any) -> Decimal:
    return min(Decimal(100), max(Decimal(0), _dec(value)))


def discount_percent(discount: Any) -> Decimal:
    """Percent from ``{'enabled': bool, 'percent': n}``, a bare number or None."""
    if discount is None:
        return Decimal(0)
    if isinstance(discount, dict):
        if not discount.get('enabled', True):
            return Decimal(0)
        return _clamp_percent(discount.get('percent'))
    return _clamp_percent(discount)


def compute_totals(lines: Iterable[Dict[str, Any]], percent: Any = 0,
                   gst_percent: Any = None) -> Dict[str, float]:
    """Bill arithmetic: discount first, GST on the discounted base.

    subtotal=1000, 10% off, 18% GST -> discount 100, taxable 900, gst 162, total 1062
    """
    rate = _dec(cfg.GST_PERCENT if gst_percent is None else gst_percent)
    pct = _clamp_percent(percent)
    # sum of rounded line totals, equal to the sum of each item lineTotal
    subtotal = sum((_money(_dec(l['price']) * _dec(l['qty'])) for l in lines), Decimal(0))
    discount = _money(subtotal * pct / 100)
    taxable = max(Decimal(0), subtotal - discount)
    gst = _money(taxable * rate / 100)
    total = taxable + gst
    return {
        'subtotal': float(subtotal),
        'discount': float(discount),
        'discountPercent': float(pct),
        'taxable': float(taxable),
        'gst': float(gst),
        'total': float(total),
    }


def new_invoice_id(prefix: Optional[str] = None) -> str:
    # 48 random bits
    return f"{prefix or cfg.INVOICE_PREFIX}-{uuid4().hex[:12]}"


def _sale_items(cart_lines: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    items = []
    for idx, line in enumerate(cart_lines, start=1):
        if not isinstance(line, dict):
            raise ValueError(f'Item #{idx} is invalid')
        product_id = line.get('productId', line.get('id'))
        if product_id in (None, ''):
            raise ValueError(f'Item #{idx} missing productId')
        qty = _dec(line.get('qty'))
        if qty <= 0:
            raise ValueError(f'Item #{idx} must have positive qty')
        price = _dec(line.get('price'))
        if price < 0:
            raise ValueError(f'Item #{idx} must have non-negative price')
        qty_out = int(qty) if qty == qty.to_integral_value() else float(qty)
        items.append({
            'productId': product_id,
            'name': str(line.get('name') or product_id),
            'price': float(price),
            'qty': qty_out,
            'lineTotal': float(_money(price * qty)),
        })
    return items


def _payment_mode(mode: Any) -> str:
    text = str(mode or 'Cash').strip()
    for known in PAYMENT_MODES:
        if text.lower() == known.lower():
            return known
    raise ValueError(f"Unsupported payment mode: {mode!r}")


class SaleRecorder:
    def __init__(
        self,
        store: LocalStore,
        engine: Any = None,
        is_online: Optional[Callable[[], bool]] = None,
        gst_percent: Optional[float] = None,
        invoice_prefix: Optional[str] = None,
    ):
        self.store = store
        self.engine = engine
        self.is_online = is_online
        self.gst_percent = cfg.GST_PERCENT if gst_percent is None else gst_percent
        self.invoice_prefix = invoice_prefix or cfg.INVOICE_PREFIX

    def finalize_sale(self, cart_lines: Iterable[Dict[str, Any]], payment_mode: str = 'Cash',
                      discount: Any = None) -> Dict[str, Any]:
        lines = list(cart_lines or [])
        if not lines:
            raise EmptyCartError('Cart empty')
        items = _sale_items(lines)
        mode = _payment_mode(payment_mode)
        totals = compute_totals(items, discount_percent(discount), self.gst_percent)
        sale = {
            'invoiceId': new_invoice_id(self.invoice_prefix),
            'timestamp': iso_now(),
            'paymentMode': mode,
            'items': items,
            'subtotal': totals['subtotal'],
            'discount': totals['discount'],
            'discountPercent': totals['discountPercent'],
            'gst': totals['gst'],
            'total': totals['total'],
        }
        try:
            saved = self.store.record_sale(sale)
        except (StoreOpenError, sqlite3.Error) as exc:
            logger.error("Failed to save bill %s locally: %s", sale['invoiceId'], exc)
            raise SaleSaveError('cannot save sale') from exc
        logger.info("Queued bill #%s %s total=%.2f (%s)", saved['billNo'], saved['invoiceId'],
                    saved['total'], mode)
        self._request_sync()
        return saved

    def _request_sync(self) -> None:
        if self.engine is None:
            return
        try:
            if self.is_online is None or self.is_online():
                self.engine.request_sync('sale')
        except Exception:
            logger.exception("Could not schedule sync after sale")


class Cart:
    """In-memory cart over a product list; never persisted."""

    def __init__(self, products: Iterable[Dict[str, Any]]):
        self._products = {str(p['id']): dict(p) for p in products if p.get('id') not in (None, '')}
        self._lines: Dict[str, Dict[str, Any]] = {}

    def __len__(self) -> int:
        return len(self._lines)

    def _product(self, product_id: Any) -> Dict[str, Any]:
        product = self._products.get(str(product_id))
        if not product or product.get('status') == 'deleted':
            raise CartError(f"Product not found ({product_id})")
        return product

    def available(self, product_id: Any) -> float:
        product = self._product(product_id)
        line = self._lines.get(str(product_id))
        in_cart = line['qty'] if line else 0
        return float(product.get('stock') or 0) - in_cart

    def add(self, product_id: Any, qty: int = 1) -> Dict[str, Any]:
        if qty <= 0:
            raise CartError("Quantity must be positive")
        product = self._product(product_id)
        if self.available(product_id) < qty:
            raise CartError("Not enough stock")
        key = str(product_id)
        line = self._lines.get(key)
        if line:
            line['qty'] += qty
        else:
            line = {'productId': product['id'], 'name': product.get('name'),
                    'price': product.get('price') or 0, 'qty': qty}
            self._lines[key] = line
        return dict(line)

    def add_by_barcode(self, code: Any, qty: int = 1) -> Dict[str, Any]:
        product = find_by_barcode(self._products.values(), code)
        if not product:
            raise CartError(f"Product not found ({code})")
        return self.add(product['id'], qty)

    def set_qty(self, product_id: Any, qty: int) -> Optional[Dict[str, Any]]:
        if qty <= 0:
            self.remove(product_id)
            return None
        key = str(product_id)
        line = self._lines.get(key)
        if not line:
            return self.add(product_id, qty)
        if float(self._product(product_id).get('stock') or 0) < qty:
            raise CartError("Not enough stock")
        line['qty'] = qty
        return dict(line)

    def remove(self, product_id: Any) -> bool:
        return self._lines.pop(str(product_id), None) is not None

    def clear(self) -> None:
        self._lines.clear()

    def lines(self) -> List[Dict[str, Any]]:
        return [dict(line) for line in self._lines.values()]

    def subtotal(self) -> float:
        return compute_totals(self.lines(), 0, 0)['subtotal']
