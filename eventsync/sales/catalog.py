"""
Catalog Lookup

The storefront catalog owns products; the engine only reads name, SKU and
price snapshots through this interface.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import polars as pl
import structlog
from pydantic import BaseModel

logger = structlog.get_logger(__name__)


class ProductInfo(BaseModel):
    """Catalog snapshot of a product"""
    product_id: str
    name: str
    sku: Optional[str] = None
    price: Optional[Decimal] = None


class CatalogLookup(ABC):
    """Read-only access to the storefront catalog"""

    @abstractmethod
    async def get_product(self, product_id: str) -> Optional[ProductInfo]:
        """Return the product, or None when the catalog has no such id"""
        pass


class StaticCatalog(CatalogLookup):
    """
    Catalog backed by an in-memory mapping.

    Useful for imports from exported files and for wiring tests.

    Example:
        catalog = StaticCatalog({"101": {"name": "Friday Show", "sku": "FRI-8PM"}})
    """

    def __init__(self, products: Optional[Mapping[Any, Any]] = None):
        self._products: Dict[str, ProductInfo] = {}
        for product_id, data in (products or {}).items():
            self.add(product_id, data)

    def add(self, product_id: Any, data: Any) -> ProductInfo:
        if isinstance(data, ProductInfo):
            info = data
        else:
            info = ProductInfo(product_id=str(product_id), **dict(data))
        self._products[str(product_id)] = info
        return info

    def remove(self, product_id: Any) -> Optional[ProductInfo]:
        return self._products.pop(str(product_id), None)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "StaticCatalog":
        """
        Load a catalog export with columns product_id, name and optionally
        sku and price.
        """
        path = Path(path)
        if path.suffix.lower() == ".parquet":
            frame = pl.read_parquet(path).with_columns(pl.all().cast(pl.Utf8))
        else:
            frame = pl.read_csv(path, infer_schema_length=0)

        catalog = cls()
        for row in frame.iter_rows(named=True):
            if not row.get("product_id"):
                continue
            catalog.add(row["product_id"], {
                "name": row.get("name") or str(row["product_id"]),
                "sku": row.get("sku") or None,
                "price": Decimal(row["price"]) if row.get("price") else None,
            })
        logger.info("Catalog loaded", path=str(path), products=len(catalog))
        return catalog

    def __len__(self) -> int:
        return len(self._products)

    async def get_product(self, product_id: str) -> Optional[ProductInfo]:
        return self._products.get(str(product_id))
