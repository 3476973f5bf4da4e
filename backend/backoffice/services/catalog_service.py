# Overview: Product catalog and supplier lookups consumed by the reconciliation core.

"""
Product Catalog contract

The catalog owns Product.stock_quantity, the single source of truth for
current on-hand stock. The core reads it through get_stock() and writes it
only through set_stock(), which stock_ledger_service.apply_stock_change()
calls together with appending a StockMovement. Nothing else assigns
stock_quantity.
"""

from __future__ import annotations

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import Product, Supplier
from .concurrency import lock_for_update


def get_product(product_id: int, *, lock: bool = False, require_active: bool = False) -> Product:
    query = db.session.query(Product).filter_by(id=product_id)
    if lock:
        query = lock_for_update(query)
    product = query.first()
    if product is None:
        raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
    if require_active and not product.is_active:
        raise ValidationError(f"Product {product.sku} is inactive", details={"product_id": product_id})
    return product


def get_products(product_ids: list[int]) -> dict[int, Product]:
    """Load several products at once; raises NotFoundError listing the missing ids."""
    wanted = set(product_ids)
    if not wanted:
        return {}
    found = {p.id: p for p in db.session.query(Product).filter(Product.id.in_(wanted)).all()}
    missing = sorted(wanted - set(found))
    if missing:
        raise NotFoundError("One or more products not found", details={"product_ids": missing})
    return found


def get_stock(product_id: int) -> int:
    return get_product(product_id).stock_quantity


def set_stock(product: Product, new_quantity: int) -> None:
    """Write on-hand stock. Caller holds the product row lock."""
    if new_quantity < 0:
        raise ValidationError(
            f"Stock for product {product.id} cannot go negative",
            details={"product_id": product.id, "new_quantity": new_quantity},
        )
    product.stock_quantity = new_quantity


def get_supplier(supplier_id: int, *, require_active: bool = True) -> Supplier:
    supplier = db.session.query(Supplier).filter_by(id=supplier_id).first()
    if supplier is None:
        raise NotFoundError(f"Supplier {supplier_id} not found", details={"supplier_id": supplier_id})
    if require_active and not supplier.is_active:
        raise ValidationError(f"Supplier {supplier.code} is inactive", details={"supplier_id": supplier_id})
    return supplier
