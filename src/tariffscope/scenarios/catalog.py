"""Product lookup used to resolve product ids into cost-model inputs."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Protocol

from tariffscope.errors import ProductNotFoundError
from tariffscope.scenarios.models import ProductProfile


class ProductCatalog(Protocol):
    def get_product(self, product_id: str) -> ProductProfile:
        ...


class InMemoryProductCatalog:
    """Thread-safe dict-backed catalog."""

    def __init__(self, products: Iterable[ProductProfile] = ()) -> None:
        self._products: Dict[str, ProductProfile] = {}
        self._lock = threading.Lock()
        for product in products:
            self.add(product)

    def add(self, product: ProductProfile) -> None:
        with self._lock:
            self._products[product.product_id] = product

    def get_product(self, product_id: str) -> ProductProfile:
        with self._lock:
            product = self._products.get(product_id)
        if product is None:
            raise ProductNotFoundError(
                f"Product {product_id} not found", detail={"product_id": product_id}
            )
        return product

    def list_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._products)

    @classmethod
    def from_json_file(cls, path: Path | str) -> "InMemoryProductCatalog":
        """Load a catalog from a JSON array of product objects."""

        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if isinstance(data, dict):
            data = data.get("products", [])
        return cls(ProductProfile.model_validate(item) for item in data)
