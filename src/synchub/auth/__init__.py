"""OAuth credential brokering for external systems.

Exports:
- TokenCache: single-slot, lock-guarded access-token cache
- OAuthRefreshExchange: httpx refresh_token grant (Zoho form / Intuit basic auth)
- CachedToken, TokenGrant, TokenExchange: supporting types
"""

from src.synchub.auth.token_cache import (
    CachedToken,
    OAuthRefreshExchange,
    TokenCache,
    TokenExchange,
    TokenGrant,
)

__all__ = [
    "CachedToken",
    "OAuthRefreshExchange",
    "TokenCache",
    "TokenExchange",
    "TokenGrant",
]
