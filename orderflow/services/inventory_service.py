from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Tuple

from ..errors import NotFoundError, ValidationError
from ..models.product import Product
from .logging import log_event


STOCK = "STOCK"
PREORDER = "PREORDER"


def _group(lines: Iterable) -> Dict[str, Dict[Optional[str], Dict[Optional[str], int]]]:
    """product -> variant -> size -> quantity"""
    grouped: Dict[str, Dict[Optional[str], Dict[Optional[str], int]]] = defaultdict(lambda: defaultdict(lambda: defaultdict(int)))
    for line in lines:
        if isinstance(line, dict):
            product_id, variant_id, size_id, qty = line["product_id"], line.get("variant_id"), line.get("size_id"), int(line["quantity"])
        else:
            product_id, variant_id, size_id, qty = line.product_id, line.variant_id, line.size_id, int(line.quantity)
        grouped[product_id][variant_id][size_id] += qty
    return grouped


class InventoryLedger:
    """Per-product / variant / size stock counters for STOCK products."""

    def load_products(self, session, product_ids: Iterable[str]) -> Dict[str, Product]:
        ids = sorted(set(product_ids))
        rows = session.query(Product).filter(Product.id.in_(ids)).with_for_update().all()
        return {p.id: p for p in rows}

    def check_available(self, products: Dict[str, Product], lines: Iterable) -> None:
        """Raise if any STOCK counter would go below zero."""
        for product_id, by_variant in _group(lines).items():
            product = products.get(product_id)
            if product is None:
                raise NotFoundError(f"Product {product_id} not found")
            if product.inventory_type != STOCK:
                continue
            unscoped_qty = 0
            for variant_id, by_size in by_variant.items():
                variant = product.get_variant(variant_id) if variant_id else None
                variant_level_qty = 0
                for size_id, qty in by_size.items():
                    size = variant.get_size(size_id) if (variant is not None and size_id) else None
                    if size is not None and size.inventory is not None:
                        if size.inventory < qty:
                            raise ValidationError(
                                f"Insufficient inventory for {product.name} {variant.name} {size.label}",
                                product_id=product.id,
                            )
                    else:
                        variant_level_qty += qty
                if variant is not None and variant.inventory is not None:
                    if variant.inventory < variant_level_qty:
                        raise ValidationError(
                            f"Insufficient inventory for {product.name} {variant.name}",
                            product_id=product.id,
                        )
                else:
                    unscoped_qty += variant_level_qty
            if product.inventory is not None and product.inventory < unscoped_qty:
                raise ValidationError(f"Insufficient inventory for {product.name}", product_id=product.id)

    def deduct(self, products: Dict[str, Product], lines: Iterable) -> List[Tuple[str, int]]:
        return self._apply(products, lines, direction=-1)

    def restock(self, products: Dict[str, Product], lines: Iterable) -> List[Tuple[str, int]]:
        return self._apply(products, lines, direction=1)

    def restock_order_lines(self, session, lines: List[dict], order_id: Optional[str] = None) -> bool:
        """Best-effort restock for a cancelled order. Never raises."""
        try:
            products = self.load_products(session, [line["product_id"] for line in lines])
            changes = self.restock(products, lines)
            log_event("info", "inventory.restocked", order_id=order_id, products=len(changes))
            return True
        except Exception as exc:
            log_event("warning", "inventory.restock_failed", order_id=order_id, error=str(exc))
            return False

    def _apply(self, products: Dict[str, Product], lines: Iterable, direction: int) -> List[Tuple[str, int]]:
        changes: List[Tuple[str, int]] = []
        for product_id, by_variant in _group(lines).items():
            product = products.get(product_id)
            if product is None or product.inventory_type != STOCK:
                continue
            aggregate = 0
            for variant_id, by_size in by_variant.items():
                variant = product.get_variant(variant_id) if variant_id else None
                variant_delta = 0
                for size_id, qty in by_size.items():
                    aggregate += qty
                    size = variant.get_size(size_id) if (variant is not None and size_id) else None
                    if size is not None and size.inventory is not None:
                        size.inventory = max(0, size.inventory + direction * qty)
                    else:
                        variant_delta += qty
                if variant is not None and variant.inventory is not None and variant_delta:
                    variant.inventory = max(0, variant.inventory + direction * variant_delta)
            if product.inventory is not None:
                product.inventory = max(0, product.inventory + direction * aggregate)
            changes.append((product_id, direction * aggregate))
        return changes
