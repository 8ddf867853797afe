from typing import Callable, Dict

import httpx

from .base import Page, PlatformAdapter
from .amazon import AmazonAdapter
from .ebay import EbayAdapter
from .etsy import EtsyAdapter
from .swell import SwellAdapter

AdapterFactory = Callable[[httpx.AsyncClient], PlatformAdapter]

# Adding a marketplace means adding an adapter here; nothing else changes.
ADAPTERS: Dict[str, AdapterFactory] = {
    "swell": SwellAdapter,
    "ebay": EbayAdapter,
    "etsy": EtsyAdapter,
    "amazon": AmazonAdapter,
}

__all__ = [
    "ADAPTERS",
    "AdapterFactory",
    "AmazonAdapter",
    "EbayAdapter",
    "EtsyAdapter",
    "Page",
    "PlatformAdapter",
    "SwellAdapter",
]
