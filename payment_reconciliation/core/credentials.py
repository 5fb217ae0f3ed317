"""
Per-institution gateway credential cache.

Settings are loaded through the directory and held for a bounded time.
Entries are frozen and swapped wholesale, so a reader never observes a
half-updated record; ``invalidate`` and ``replace`` let the settings owner
push changes without waiting for the TTL.
"""
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import structlog

from payment_reconciliation.core.errors import ValidationError
from payment_reconciliation.core.ports import Directory, InstitutionPaymentSettings

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class _CacheEntry:
    settings: InstitutionPaymentSettings
    expires_at: float


class GatewayCredentialCache:
    """
    TTL-bounded cache of institution payment settings.

    Args:
        directory: Source of institution payment settings
        ttl_seconds: Lifetime of a cached entry
        fallback_secret_key: Platform key used when an institution has none
        clock: Monotonic time source, injectable for tests
    """

    def __init__(
        self,
        directory: Directory,
        ttl_seconds: float = 300,
        fallback_secret_key: str = "",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.directory = directory
        self.ttl_seconds = ttl_seconds
        self.fallback_secret_key = fallback_secret_key
        self._clock = clock
        self._entries: Dict[int, _CacheEntry] = {}

    async def get(self, institution_id: int) -> InstitutionPaymentSettings:
        """
        Get payment settings for an institution.

        Raises:
            ValidationError: If the institution has no payment settings
        """
        entry = self._entries.get(institution_id)
        if entry is not None and entry.expires_at > self._clock():
            return entry.settings

        settings = await self.directory.get_payment_settings(institution_id)
        if settings is None:
            self._entries.pop(institution_id, None)
            raise ValidationError(
                "Payment settings not configured for this institution",
                details={"institution_id": institution_id},
            )

        self.replace(settings)
        logger.debug("credential_cache_loaded", institution_id=institution_id)
        return settings

    def secret_key_for(self, settings: InstitutionPaymentSettings) -> Optional[str]:
        return settings.secret_key or self.fallback_secret_key or None

    async def get_secret_key(self, institution_id: int) -> str:
        """
        Resolve the secret key used to call the gateway for an institution.

        Raises:
            ValidationError: If neither the institution nor the platform has a key
        """
        settings = await self.get(institution_id)
        secret_key = self.secret_key_for(settings)
        if not secret_key:
            raise ValidationError(
                "Paystack is not configured for this institution",
                details={"institution_id": institution_id},
            )
        return secret_key

    def replace(self, settings: InstitutionPaymentSettings) -> None:
        self._entries[settings.institution_id] = _CacheEntry(
            settings=settings, expires_at=self._clock() + self.ttl_seconds
        )

    def invalidate(self, institution_id: Optional[int] = None) -> None:
        """Drop one institution's entry, or every entry when no id is given."""
        if institution_id is None:
            self._entries.clear()
        else:
            self._entries.pop(institution_id, None)
        logger.info("credential_cache_invalidated", institution_id=institution_id)
