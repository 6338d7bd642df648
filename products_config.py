# products_config.py - maps store product ids to the ebook file delivered for them
#
# The catalog lives in a JSON file (EBOOKS_CONFIG, default config/ebooks.json):
#
#   {"products": [{"product_id": 632910392, "title": "The Book", "file_name": "book.epub"}]}
#
# Files are looked up under EBOOKS_DIR. The file is re-read on every lookup so
# entries can be added without restarting the service.
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

log = logging.getLogger("products_config")


@dataclass(frozen=True)
class Ebook:
    product_id: int
    title: Optional[str]
    file_name: str


def _as_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_products(raw: Dict) -> List[Ebook]:
    out = []
    for entry in raw.get("products", []):
        product_id = _as_int(entry.get("product_id"))
        file_name = entry.get("file_name")
        if product_id is None or not file_name:
            log.warning("Skipping catalog entry without product_id/file_name: %s", entry)
            continue
        out.append(Ebook(product_id=product_id, title=entry.get("title"), file_name=file_name))
    return out


def load_products(path: Path) -> List[Ebook]:
    if not path.exists():
        return []
    with path.open(encoding="utf-8") as fh:
        return parse_products(json.load(fh))


class ProductCatalog:
    def __init__(self, path: Optional[Path] = None, products: Optional[Iterable[Ebook]] = None):
        self.path = Path(path) if path else None
        self._products = list(products or [])

    def products(self) -> List[Ebook]:
        if self.path is not None:
            return load_products(self.path)
        return self._products

    def find(self, product_id) -> Optional[Ebook]:
        wanted = _as_int(product_id)
        if wanted is None:
            return None
        for ebook in self.products():
            if ebook.product_id == wanted:
                return ebook
        return None
