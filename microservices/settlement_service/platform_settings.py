"""
Platform Settings

Hot-reloadable fee percentages backed by the PlatformSettings table.
Reads are cached for a bounded time and the cache entry is dropped on
every write; the table stays the source of truth.

The cache is per process. A write through one replica drops only that
replica's entry; the others keep charging the old fee until their entry
expires (SETTLEMENT_SETTINGS_CACHE_TTL_SECONDS, 1800 s by default). Lower
the TTL when fee changes must take effect everywhere sooner.
"""

import logging
import time
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, Optional, Tuple

from .models import PlatformSetting, PlatformSettingKey
from .protocols import InvalidSettingError, SettlementRepositoryProtocol

logger = logging.getLogger(__name__)


DEFAULT_FEE_PERCENT = Decimal("2.0")

SETTING_DESCRIPTIONS = {
    PlatformSettingKey.BRAND_PLATFORM_FEE_PERCENT.value: "Platform fee added to each brand charge (percent)",
    PlatformSettingKey.INFLUENCER_PLATFORM_FEE_PERCENT.value: "Platform fee deducted from each influencer payout (percent)",
}


def calculate_fee(amount_in_pence: int, percent: Decimal) -> int:
    """Fee in minor units, rounded half up"""
    fee = (Decimal(amount_in_pence) * percent / Decimal(100)).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return int(fee)


def parse_percent(value: str) -> Decimal:
    """Validate a percentage string (0-100)"""
    try:
        percent = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidSettingError(f"Not a number: {value!r}")
    if not percent.is_finite() or percent < 0 or percent > 100:
        raise InvalidSettingError(f"Percentage must be between 0 and 100: {value}")
    return percent


class PlatformSettingsService:
    """Fee percentage lookup with a TTL read cache"""

    def __init__(self, repository: SettlementRepositoryProtocol, cache_ttl_seconds: int = 1800):
        self.repository = repository
        self.cache_ttl_seconds = cache_ttl_seconds
        # Per process: other replicas see a write only after their entry expires
        self._cache: Dict[str, Tuple[str, float]] = {}

    async def get_value(self, setting_key: str) -> Optional[str]:
        """Raw setting value (None if the row is missing)"""
        cached = self._cache.get(setting_key)
        if cached and cached[1] > time.monotonic():
            return cached[0]

        setting = await self.repository.get_setting(setting_key)
        if setting is None:
            return None
        self._cache[setting_key] = (setting.setting_value, time.monotonic() + self.cache_ttl_seconds)
        return setting.setting_value

    async def get_percent(self, setting_key: str, default: Decimal = DEFAULT_FEE_PERCENT) -> Decimal:
        value = await self.get_value(setting_key)
        if value is None:
            return default
        try:
            return parse_percent(value)
        except InvalidSettingError as e:
            logger.error(f"Invalid value for {setting_key}, using default {default}: {e}")
            return default

    async def get_brand_fee_percent(self) -> Decimal:
        return await self.get_percent(PlatformSettingKey.BRAND_PLATFORM_FEE_PERCENT.value)

    async def get_influencer_fee_percent(self) -> Decimal:
        return await self.get_percent(PlatformSettingKey.INFLUENCER_PLATFORM_FEE_PERCENT.value)

    async def get_settings(self) -> Dict[str, str]:
        """Every known fee setting with its effective value"""
        result = {}
        for key in PlatformSettingKey:
            result[key.value] = str(await self.get_percent(key.value))
        return result

    async def update_setting(self, setting_key: str, setting_value: str, updated_by: Optional[str] = None) -> PlatformSetting:
        """
        Write a setting and drop its cache entry.

        Raises:
            InvalidSettingError: unknown key or out-of-range percentage
        """
        if setting_key not in SETTING_DESCRIPTIONS:
            raise InvalidSettingError(f"Unknown setting: {setting_key}")
        percent = parse_percent(setting_value)

        setting = await self.repository.upsert_setting(
            PlatformSetting(
                setting_key=setting_key,
                setting_value=str(percent),
                description=SETTING_DESCRIPTIONS[setting_key],
                updated_by=updated_by,
                updated_at=datetime.now(timezone.utc),
            )
        )
        self.invalidate(setting_key)
        logger.info(f"Platform setting {setting_key} set to {percent} by {updated_by or 'system'}")
        return setting

    def invalidate(self, setting_key: Optional[str] = None):
        if setting_key is None:
            self._cache.clear()
        else:
            self._cache.pop(setting_key, None)


__all__ = ["PlatformSettingsService", "calculate_fee", "parse_percent", "DEFAULT_FEE_PERCENT"]
