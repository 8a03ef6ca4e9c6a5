"""External system connectors (REZEN, Zoho CRM, QuickBooks Online).

Each connector implements RecordSource: paginated list_page() plus an
optional fetch_detail(), raising classified UpstreamError subclasses.
"""

from src.synchub.connectors.base import Page, RecordSource
from src.synchub.connectors.quickbooks import QuickBooksClient
from src.synchub.connectors.rezen import RezenClient
from src.synchub.connectors.zoho import ZohoClient

__all__ = [
    "Page",
    "QuickBooksClient",
    "RecordSource",
    "RezenClient",
    "ZohoClient",
]
