from __future__ import annotations

from .catalog_mapper import map_category, map_contact, map_item
from .zoho_errors import classify_http_failure

__all__ = [
    "classify_http_failure",
    "map_category",
    "map_contact",
    "map_item",
]
