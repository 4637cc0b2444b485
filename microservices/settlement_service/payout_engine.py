"""
Payout Engine

Turns a PAID milestone into an InfluencerPayout:

    NetAmountInPence = GrossAmountInPence - PlatformFeeInPence

The influencer fee percentage is read from PlatformSettings at the moment
the payout is created and stored on the row; later fee changes never
recalculate existing payouts. A RELEASED payout adds its net amount to the
influencer's available balance.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, List, Optional

from core.config import SettlementConfig

from .events.publishers import publish_payout_released
from .models import InfluencerPayout, PaymentMilestone, PayoutStatus
from .platform_settings import PlatformSettingsService, calculate_fee
from .protocols import (
    CampaignNotFoundError,
    EventBusProtocol,
    InsufficientBalanceError,
    PayoutNotFoundError,
    PayoutReleaseNotAllowedError,
    SettlementRepositoryProtocol,
)

if TYPE_CHECKING:
    from .withdrawal_engine import WithdrawalEngine

logger = logging.getLogger(__name__)


class PayoutEngine:
    """Payout accrual and release"""

    def __init__(
        self,
        repository: SettlementRepositoryProtocol,
        settings_service: PlatformSettingsService,
        config: SettlementConfig,
        event_bus: Optional[EventBusProtocol] = None,
        withdrawal_engine: Optional["WithdrawalEngine"] = None,
    ):
        self.repository = repository
        self.settings_service = settings_service
        self.config = config
        self.event_bus = event_bus
        self.withdrawal_engine = withdrawal_engine

    async def accrue_payout(self, milestone: PaymentMilestone) -> InfluencerPayout:
        """
        Create the payout of a PAID milestone (at most one per milestone).

        Returns:
            The milestone's payout, whether created now or already present
        """
        existing = await self.repository.get_payout_by_milestone(milestone.id)
        if existing:
            logger.info(f"Payout {existing.id} already exists for milestone {milestone.id}; no-op")
            return existing

        campaign = await self.repository.get_campaign(milestone.campaign_id)
        if not campaign:
            raise CampaignNotFoundError(f"Campaign not found: {milestone.campaign_id}")

        fee_percent = await self.settings_service.get_influencer_fee_percent()
        gross = milestone.amount_in_pence
        fee = min(calculate_fee(gross, fee_percent), gross)
        now = datetime.now(timezone.utc)
        auto_release = self.config.auto_release_payouts

        payout = InfluencerPayout(
            id=f"pay_{uuid.uuid4().hex[:16]}",
            campaign_id=campaign.id,
            influencer_id=campaign.influencer_id,
            milestone_id=milestone.id,
            transaction_id=milestone.transaction_id,
            gross_amount_in_pence=gross,
            platform_fee_in_pence=fee,
            net_amount_in_pence=gross - fee,
            currency=milestone.currency,
            status=PayoutStatus.RELEASED if auto_release else PayoutStatus.PENDING_RELEASE,
            released_at=now if auto_release else None,
            released_by="system" if auto_release else None,
        )

        created = await self.repository.create_payout(payout)
        if created is None:
            logger.info(f"Concurrent payout creation for milestone {milestone.id}; keeping the existing one")
            return await self.repository.get_payout_by_milestone(milestone.id)

        logger.info(
            f"Payout {created.id} for influencer {created.influencer_id}: gross {gross}, "
            f"fee {fee} ({fee_percent}%), net {created.net_amount_in_pence} {created.currency} [{created.status.value}]"
        )
        if created.status == PayoutStatus.RELEASED:
            await self._on_released(created)
        return created

    async def release_payout(self, payout_id: str, brand_id: str) -> InfluencerPayout:
        """
        Manually release a PENDING_RELEASE payout.

        Raises:
            PayoutNotFoundError: Unknown payout
            PayoutReleaseNotAllowedError: Caller is not the campaign's brand, or the payout FAILED
        """
        payout = await self.repository.get_payout(payout_id)
        if not payout:
            raise PayoutNotFoundError(f"Payout not found: {payout_id}")

        campaign = await self.repository.get_campaign(payout.campaign_id)
        if not campaign or campaign.brand_id != brand_id:
            raise PayoutReleaseNotAllowedError(f"Only the campaign's brand can release payout {payout_id}")

        if payout.status == PayoutStatus.RELEASED:
            logger.info(f"Payout {payout_id} already RELEASED; no-op")
            return payout
        if payout.status != PayoutStatus.PENDING_RELEASE:
            raise PayoutReleaseNotAllowedError(f"Payout {payout_id} is {payout.status.value}")

        released = await self.repository.update_payout_status(
            payout_id,
            [PayoutStatus.PENDING_RELEASE],
            PayoutStatus.RELEASED,
            {"released_at": datetime.now(timezone.utc), "released_by": brand_id},
        )
        if released is None:
            current = await self.repository.get_payout(payout_id)
            if current and current.status == PayoutStatus.RELEASED:
                return current
            raise PayoutReleaseNotAllowedError(f"Payout {payout_id} could not be released")

        logger.info(f"Payout {payout_id} released by brand {brand_id}")
        await self._on_released(released)
        return released

    async def get_payout(self, payout_id: str) -> InfluencerPayout:
        payout = await self.repository.get_payout(payout_id)
        if not payout:
            raise PayoutNotFoundError(f"Payout not found: {payout_id}")
        return payout

    async def get_campaign_payouts(self, campaign_id: str) -> List[InfluencerPayout]:
        return await self.repository.get_campaign_payouts(campaign_id)

    async def get_influencer_payouts(
        self, influencer_id: str, status: Optional[PayoutStatus] = None
    ) -> List[InfluencerPayout]:
        """Payouts of an influencer, newest first (PENDING_RELEASE ones are still waiting on the brand)"""
        return await self.repository.get_influencer_payouts(influencer_id, [status] if status else None)

    async def _on_released(self, payout: InfluencerPayout):
        await publish_payout_released(self.event_bus, payout)

        if not (self.config.auto_withdrawal_enabled and self.withdrawal_engine):
            return
        try:
            await self.withdrawal_engine.auto_withdraw(payout)
        except InsufficientBalanceError as e:
            logger.warning(f"Auto-withdrawal of payout {payout.id} skipped: {e}")
        except Exception as e:
            # The payout stays RELEASED; the influencer can withdraw manually
            logger.error(f"Auto-withdrawal of payout {payout.id} failed: {e}", exc_info=True)


__all__ = ["PayoutEngine"]
