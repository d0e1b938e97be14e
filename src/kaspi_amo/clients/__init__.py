"""External API clients -- narrow interfaces over Kaspi and amoCRM.

Provides the abstract OrderSource and CRMClient interfaces with httpx
implementations:
- KaspiClient: order feed, retried reads
- AmoCRMClient: contacts, deals, line items and notes behind a rate gate,
  with persisted OAuth tokens and a single refresh on 401
"""

from src.kaspi_amo.clients.adapter import CRMClient, OrderSource
from src.kaspi_amo.clients.amocrm import AmoCRMClient
from src.kaspi_amo.clients.kaspi import KaspiClient

__all__ = [
    "CRMClient",
    "OrderSource",
    "AmoCRMClient",
    "KaspiClient",
]
