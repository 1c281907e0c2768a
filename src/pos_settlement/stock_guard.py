"""Stock validation against a cached, possibly stale, snapshot.

The snapshot is an advisory cache: it is filled from ``fetch_products`` and
only refreshed after a terminal completes its own settlement, so two terminals
can both pass validation for the last unit in stock. The guard only promises
that a cart never exceeds the snapshot it was checked against.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Dict, Iterable, Optional

from . import data_manager, log
from .cart import Cart, CartLine
from .errors import InsufficientStockError


@dataclass(frozen=True)
class StockCheck:
    """Outcome of a stock validation.

    ``capped_quantity`` is set on the edit path when the requested quantity
    was reduced to what the snapshot allows.
    """

    allowed: bool
    available: Optional[int]
    capped_quantity: Optional[int] = None
    message: Optional[str] = None


class StockSnapshot:
    """Per-product available quantity as of the last product fetch."""

    def __init__(self, quantities: Optional[Dict[str, int]] = None, *, fetched_at: Optional[datetime] = None) -> None:
        self._quantities: Dict[str, int] = dict(quantities or {})
        self.fetched_at = fetched_at

    @classmethod
    def from_products(cls, products: Iterable[data_manager.ProductRow], *, fetched_at: Optional[datetime] = None) -> "StockSnapshot":
        snapshot = cls()
        snapshot.refresh(products, fetched_at=fetched_at)
        return snapshot

    def refresh(self, products: Iterable[data_manager.ProductRow], *, fetched_at: Optional[datetime] = None) -> None:
        """Replace the cached quantities with a fresh product listing."""

        self._quantities = {product.product_id: product.stock_quantity for product in products}
        self.fetched_at = fetched_at if fetched_at is not None else datetime.now(UTC)
        log.debug("Refreshed stock snapshot with %d products", len(self._quantities))

    def available(self, product_ref: str) -> Optional[int]:
        return self._quantities.get(product_ref)

    def __contains__(self, product_ref: object) -> bool:
        return product_ref in self._quantities

    def __len__(self) -> int:
        return len(self._quantities)


class StockGuard:
    """Checks cart quantities against a :class:`StockSnapshot`."""

    def __init__(self, snapshot: StockSnapshot) -> None:
        self.snapshot = snapshot
        # Product-row stock used on the add path for products the snapshot lacks.
        self._row_stock: Dict[str, int] = {}

    def _available_for(self, product: data_manager.ProductRow) -> int:
        available = self.snapshot.available(product.product_id)
        if available is None:
            self._row_stock[product.product_id] = product.stock_quantity
            return product.stock_quantity
        return available

    def limit_for(self, product_ref: str) -> Optional[int]:
        """Stock a line is held to: the snapshot, else the figure it was added against."""

        available = self.snapshot.available(product_ref)
        return self._row_stock.get(product_ref) if available is None else available

    def can_add(self, product: data_manager.ProductRow, cart: Cart, requested_delta: int = 1) -> StockCheck:
        """Decide whether ``requested_delta`` more units of ``product`` fit.

        The add path rejects outright; the cart is left as it was.
        """

        available = self._available_for(product)
        requested = cart.quantity_of(product.product_id) + requested_delta
        if requested > available:
            if available <= 0:
                message = f"{product.product_name} is currently out of stock"
            else:
                message = (
                    f"{product.product_name} only has {available} items in stock. "
                    "You cannot add more items to the cart."
                )
            log.warning(
                "Rejected add of %s x '%s': requested %s, available %s",
                requested_delta,
                product.product_id,
                requested,
                available,
            )
            return StockCheck(allowed=False, available=available, message=message)
        return StockCheck(allowed=True, available=available)

    def cap_quantity(self, line: CartLine, new_quantity: int) -> StockCheck:
        """Validate a manual quantity edit, capping it at the available stock.

        Unlike :meth:`can_add`, the edit is not rejected: the returned check
        carries the quantity the line should be set to. Products missing from
        the snapshot are held to the stock they were added against, and are
        only left uncapped when no figure is known at all.
        """

        available = self.limit_for(line.product_ref)
        requested = max(0, new_quantity)
        if available is not None and requested > available:
            capped = max(0, available)
            log.warning(
                "Capped quantity of '%s' from %s to %s",
                line.product_ref,
                requested,
                capped,
            )
            return StockCheck(
                allowed=False,
                available=available,
                capped_quantity=capped,
                message=(
                    f"{line.name} only has {available} items in stock. "
                    f"You cannot sell {requested} items."
                ),
            )
        return StockCheck(allowed=True, available=available, capped_quantity=requested)

    def revalidate(self, cart: Cart) -> None:
        """Re-check every billable line right before committing.

        Lines are held to the same limit as :meth:`cap_quantity`.

        Raises:
            InsufficientStockError: For the first line exceeding the snapshot.
        """

        for line in cart.billable_lines():
            available = self.limit_for(line.product_ref)
            if available is not None and line.quantity > available:
                log.warning(
                    "Pre-settlement stock check failed for '%s': requested %s, available %s",
                    line.product_ref,
                    line.quantity,
                    available,
                )
                raise InsufficientStockError(line.product_ref, line.name, available, line.quantity)
