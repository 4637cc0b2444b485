"""
Milestone Engine

Owns the payment schedule of a campaign and the milestone state machine:

    PENDING  --(due date passed)-->   OVERDUE
    PENDING  --(charge succeeds)-->   PAID
    OVERDUE  --(charge succeeds)-->   PAID
    PENDING|OVERDUE --(attempts exhausted)--> FAILED
    PENDING|OVERDUE --(campaign cancelled)--> CANCELLED

PAID, FAILED and CANCELLED are terminal. Every transition is a conditional
update, so a replayed confirmation finds the milestone already PAID and does
nothing; the payout is created only by the call that won the PAID transition.

Split policy: the campaign total is divided evenly and the rounding
remainder is added to the LAST milestone (100000 / 3 -> 33333, 33333, 33334).
"""

import calendar
import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .events.publishers import publish_milestone_failed, publish_milestone_paid
from .models import (
    CHARGEABLE_MILESTONE_STATUSES,
    Campaign,
    CreateMilestonesRequest,
    MilestoneStatus,
    PaymentMilestone,
    PaymentType,
    UpdateMilestoneRequest,
)
from .payout_engine import PayoutEngine
from .platform_settings import PlatformSettingsService, calculate_fee
from .protocols import (
    CampaignNotFoundError,
    EventBusProtocol,
    InvalidAmountError,
    InvalidMilestoneStateError,
    MilestoneInvariantViolationError,
    MilestoneNotFoundError,
    MilestonesAlreadyExistError,
    SettlementRepositoryProtocol,
)

logger = logging.getLogger(__name__)


def split_amount(total_in_pence: int, parts: int) -> List[int]:
    """
    Split a total into `parts` integer amounts that sum exactly to the total.

    The remainder of the integer division goes to the last part.
    """
    if parts < 1:
        raise InvalidAmountError("Number of milestones must be at least 1")
    if total_in_pence < 0:
        raise InvalidAmountError("Total amount cannot be negative")

    base, remainder = divmod(total_in_pence, parts)
    amounts = [base] * parts
    amounts[-1] += remainder
    return amounts


def add_months(start: datetime, months: int) -> datetime:
    """Same day-of-month `months` later, clamped to the end of shorter months"""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


class MilestoneEngine:
    """
    Milestone schedule and status machine.

    The PAID transition is the only path that creates an InfluencerPayout.
    """

    def __init__(
        self,
        repository: SettlementRepositoryProtocol,
        settings_service: PlatformSettingsService,
        payout_engine: PayoutEngine,
        event_bus: Optional[EventBusProtocol] = None,
    ):
        self.repository = repository
        self.settings_service = settings_service
        self.payout_engine = payout_engine
        self.event_bus = event_bus

    # ====================
    # Schedule
    # ====================

    async def register_campaign(self, campaign: Campaign) -> List[PaymentMilestone]:
        """
        Record a booked campaign and create its schedule.

        Re-delivery of the same booking returns the existing schedule.
        """
        existing = await self.repository.get_campaign(campaign.id)
        if existing is None:
            await self.repository.create_campaign(campaign)
            logger.info(
                f"Registered campaign {campaign.id}: {campaign.total_amount_in_pence} {campaign.currency} "
                f"({campaign.payment_type.value})"
            )
        return await self.create_milestones(campaign.id)

    async def create_milestones(
        self,
        campaign_id: str,
        request: Optional[CreateMilestonesRequest] = None,
    ) -> List[PaymentMilestone]:
        """
        Split a campaign total into milestones.

        One-off campaigns get a single implicit milestone. Due dates are
        monthly from the start date; the first milestone is due on it.

        Returns:
            The schedule (the existing one if the campaign already has milestones)

        Raises:
            CampaignNotFoundError: Unknown campaign
            MilestonesAlreadyExistError: A different schedule already exists
            InvalidAmountError: Total cannot be split into positive amounts
            MilestoneInvariantViolationError: Amounts do not sum to the total
        """
        request = request or CreateMilestonesRequest()
        campaign = await self.repository.get_campaign(campaign_id)
        if not campaign:
            raise CampaignNotFoundError(f"Campaign not found: {campaign_id}")

        if campaign.payment_type == PaymentType.ONE_OFF:
            count = 1
        else:
            count = request.number_of_milestones or campaign.number_of_milestones

        existing = await self.repository.get_campaign_milestones(campaign_id)
        if existing:
            if request.number_of_milestones and len(existing) != count:
                raise MilestonesAlreadyExistError(
                    f"Campaign {campaign_id} already has {len(existing)} milestones"
                )
            logger.info(f"Campaign {campaign_id} already has a schedule of {len(existing)} milestones")
            return existing

        if campaign.total_amount_in_pence <= 0:
            raise InvalidAmountError(f"Campaign {campaign_id} has no amount to schedule")
        if count > campaign.total_amount_in_pence:
            raise InvalidAmountError(
                f"Cannot split {campaign.total_amount_in_pence} into {count} positive milestones"
            )

        amounts = split_amount(campaign.total_amount_in_pence, count)
        fee_percent = await self.settings_service.get_brand_fee_percent()
        start = request.start_date or campaign.start_date or datetime.now(timezone.utc)
        titles = request.titles or []

        milestones = []
        for index, amount in enumerate(amounts):
            if index < len(titles) and titles[index]:
                title = titles[index]
            elif count == 1:
                title = "Campaign payment"
            else:
                title = f"Milestone {index + 1} of {count}"

            milestones.append(
                PaymentMilestone(
                    id=f"ms_{uuid.uuid4().hex[:16]}",
                    campaign_id=campaign.id,
                    milestone_number=index + 1,
                    title=title,
                    amount_in_pence=amount,
                    platform_fee_in_pence=calculate_fee(amount, fee_percent),
                    currency=campaign.currency,
                    due_date=add_months(start, index),
                    status=MilestoneStatus.PENDING,
                )
            )

        self._check_totals(campaign, milestones)

        created = await self.repository.create_milestones(milestones)
        if not created:
            # Lost a race with a concurrent creation; return the winner's schedule
            logger.info(f"Concurrent schedule creation for campaign {campaign_id}, returning existing")
            return await self.repository.get_campaign_milestones(campaign_id)

        logger.info(
            f"Created {len(created)} milestones for campaign {campaign_id}: "
            f"{[m.amount_in_pence for m in created]} (brand fee {fee_percent}%)"
        )
        return created

    async def verify_milestone_totals(self, campaign_id: str) -> List[PaymentMilestone]:
        """
        Check that the schedule sums exactly to the campaign total.

        Raises:
            MilestoneInvariantViolationError: when it does not
        """
        campaign = await self.repository.get_campaign(campaign_id)
        if not campaign:
            raise CampaignNotFoundError(f"Campaign not found: {campaign_id}")
        milestones = await self.repository.get_campaign_milestones(campaign_id)
        self._check_totals(campaign, milestones)
        return milestones

    @staticmethod
    def _check_totals(campaign: Campaign, milestones: List[PaymentMilestone]):
        actual = sum(m.amount_in_pence for m in milestones)
        if actual != campaign.total_amount_in_pence:
            raise MilestoneInvariantViolationError(
                f"Milestones of campaign {campaign.id} sum to {actual}, expected {campaign.total_amount_in_pence}",
                campaign_id=campaign.id,
                expected=campaign.total_amount_in_pence,
                actual=actual,
            )

    # ====================
    # Edits
    # ====================

    async def update_milestone(self, milestone_id: str, request: UpdateMilestoneRequest) -> PaymentMilestone:
        """
        Edit an unpaid milestone.

        A new amount keeps the schedule summing to the campaign total: the
        difference is taken from (or given to) the campaign's last other
        unpaid milestone, and both brand fees are recomputed. Moving the due
        date of an OVERDUE milestone into the future makes it PENDING again.

        Raises:
            MilestoneNotFoundError, InvalidMilestoneStateError, InvalidAmountError
        """
        milestone = await self.get_milestone(milestone_id)
        await self._ensure_editable(milestone)

        fields = request.model_dump(exclude_none=True, exclude={"amount_in_pence"})
        due_date = fields.get("due_date")
        if due_date is not None and due_date.tzinfo is None:
            fields["due_date"] = due_date = due_date.replace(tzinfo=timezone.utc)
        if due_date is not None and milestone.status == MilestoneStatus.OVERDUE and due_date > datetime.now(timezone.utc):
            fields["status"] = MilestoneStatus.PENDING
        changes = {milestone.id: fields}

        if request.amount_in_pence is not None and request.amount_in_pence != milestone.amount_in_pence:
            for record_id, amount_fields in (await self._rebalance(milestone, request.amount_in_pence)).items():
                changes.setdefault(record_id, {}).update(amount_fields)

        if not any(changes.values()):
            return milestone

        updated = await self.repository.update_milestones(changes, CHARGEABLE_MILESTONE_STATUSES)
        if not updated:
            raise InvalidMilestoneStateError(
                f"Milestone {milestone_id} changed status while being edited", milestone_id=milestone_id
            )
        logger.info(f"Updated milestone {milestone_id}: {', '.join(sorted(changes[milestone_id]))}")
        return next(m for m in updated if m.id == milestone_id)

    async def _rebalance(self, milestone: PaymentMilestone, new_amount: int) -> Dict[str, Dict]:
        campaign = await self.repository.get_campaign(milestone.campaign_id)
        if not campaign:
            raise CampaignNotFoundError(f"Campaign not found: {milestone.campaign_id}")
        schedule = await self.repository.get_campaign_milestones(milestone.campaign_id)
        others = [m for m in schedule if m.id != milestone.id and m.status in CHARGEABLE_MILESTONE_STATUSES]
        if not others:
            raise InvalidAmountError(
                f"Milestone {milestone.id} is the only unpaid milestone; its amount cannot change"
            )
        offset = others[-1]
        await self._ensure_editable(offset)

        offset_amount = offset.amount_in_pence - (new_amount - milestone.amount_in_pence)
        if offset_amount <= 0:
            raise InvalidAmountError(
                f"Milestone {offset.id} cannot absorb the change: it would be left with {offset_amount}"
            )

        amounts = {milestone.id: new_amount, offset.id: offset_amount}
        projected = [m.model_copy(update={"amount_in_pence": amounts[m.id]}) if m.id in amounts else m for m in schedule]
        self._check_totals(campaign, projected)

        fee_percent = await self.settings_service.get_brand_fee_percent()
        return {
            milestone.id: {"amount_in_pence": new_amount, "platform_fee_in_pence": calculate_fee(new_amount, fee_percent)},
            offset.id: {"amount_in_pence": offset_amount, "platform_fee_in_pence": calculate_fee(offset_amount, fee_percent)},
        }

    async def cancel_milestone(self, milestone_id: str) -> PaymentMilestone:
        """
        Withdraw one unpaid milestone from the schedule.

        The row stays (CANCELLED) so the schedule still sums to the campaign total.
        """
        milestone = await self.get_milestone(milestone_id)
        await self._ensure_editable(milestone)

        cancelled = await self.repository.update_milestone_status(
            milestone_id, CHARGEABLE_MILESTONE_STATUSES, MilestoneStatus.CANCELLED
        )
        if cancelled is None:
            raise InvalidMilestoneStateError(
                f"Milestone {milestone_id} changed status while being cancelled", milestone_id=milestone_id
            )
        logger.info(f"Cancelled milestone {milestone_id} of campaign {milestone.campaign_id}")
        return cancelled

    async def _ensure_editable(self, milestone: PaymentMilestone):
        if milestone.status not in CHARGEABLE_MILESTONE_STATUSES:
            raise InvalidMilestoneStateError(
                f"Milestone {milestone.id} is {milestone.status.value} and cannot be changed",
                milestone_id=milestone.id,
                status=milestone.status.value,
            )
        if await self.repository.get_in_flight_transaction(milestone.id):
            raise InvalidMilestoneStateError(
                f"Milestone {milestone.id} has a charge in progress",
                milestone_id=milestone.id,
                status=milestone.status.value,
            )

    # ====================
    # Queries
    # ====================

    async def get_milestone(self, milestone_id: str) -> PaymentMilestone:
        milestone = await self.repository.get_milestone(milestone_id)
        if not milestone:
            raise MilestoneNotFoundError(f"Milestone not found: {milestone_id}")
        return milestone

    async def get_campaign_milestones(self, campaign_id: str) -> List[PaymentMilestone]:
        return await self.repository.get_campaign_milestones(campaign_id)

    # ====================
    # Transitions
    # ====================

    async def record_attempt(self, milestone_id: str) -> Optional[PaymentMilestone]:
        """Count a charge attempt"""
        return await self.repository.increment_milestone_attempts(milestone_id, datetime.now(timezone.utc))

    async def mark_paid(self, milestone_id: str, transaction_id: Optional[str] = None) -> Optional[PaymentMilestone]:
        """
        PENDING/OVERDUE -> PAID, then create the payout.

        Returns:
            The milestone when this call performed the transition, None when it
            was already PAID (duplicate confirmation) or terminal
        """
        milestone = await self.repository.mark_milestone_paid(milestone_id, transaction_id, datetime.now(timezone.utc))
        if milestone is None:
            current = await self.repository.get_milestone(milestone_id)
            status = current.status.value if current else "missing"
            logger.info(f"Milestone {milestone_id} not marked PAID (currently {status}); no-op")
            return None

        logger.info(
            f"Milestone {milestone.id} (#{milestone.milestone_number} of campaign {milestone.campaign_id}) PAID "
            f"by transaction {transaction_id}"
        )
        await publish_milestone_paid(self.event_bus, milestone)
        await self.payout_engine.accrue_payout(milestone)
        return milestone

    async def ensure_payout(self, milestone: PaymentMilestone):
        """Create the missing payout of a PAID milestone (crash recovery)"""
        if milestone.status != MilestoneStatus.PAID:
            raise InvalidMilestoneStateError(
                f"Milestone {milestone.id} is {milestone.status.value}, not PAID",
                milestone_id=milestone.id,
                status=milestone.status.value,
            )
        return await self.payout_engine.accrue_payout(milestone)

    async def record_charge_failure(
        self,
        milestone_id: str,
        failure_message: Optional[str],
        max_attempts: int,
    ) -> Optional[PaymentMilestone]:
        """
        Note a failed charge; once attempts are exhausted the milestone becomes FAILED.

        Returns:
            The updated milestone, or None if it had already left PENDING/OVERDUE
        """
        milestone = await self.repository.get_milestone(milestone_id)
        if milestone is None or milestone.status not in CHARGEABLE_MILESTONE_STATUSES:
            return None

        if milestone.attempt_count >= max_attempts:
            return await self.mark_failed(
                milestone_id,
                f"Charge failed after {milestone.attempt_count} attempts: {failure_message or 'unknown error'}",
            )

        return await self.repository.update_milestone_status(
            milestone_id,
            [milestone.status],
            milestone.status,
            {"failure_message": failure_message},
        )

    async def mark_failed(self, milestone_id: str, failure_message: str) -> Optional[PaymentMilestone]:
        """PENDING/OVERDUE -> FAILED (surfaced to the brand for manual intervention)"""
        milestone = await self.repository.update_milestone_status(
            milestone_id,
            CHARGEABLE_MILESTONE_STATUSES,
            MilestoneStatus.FAILED,
            {"failure_message": failure_message},
        )
        if milestone is None:
            logger.info(f"Milestone {milestone_id} not marked FAILED; already terminal")
            return None

        logger.warning(f"Milestone {milestone_id} FAILED: {failure_message}")
        await publish_milestone_failed(self.event_bus, milestone)
        return milestone

    async def mark_overdue_milestones(self, now: Optional[datetime] = None) -> List[PaymentMilestone]:
        """PENDING milestones past their due date become OVERDUE"""
        updated = await self.repository.mark_overdue_milestones(now or datetime.now(timezone.utc))
        if updated:
            logger.info(f"Marked {len(updated)} milestones OVERDUE")
        return updated

    async def cancel_campaign_milestones(self, campaign_id: str) -> List[PaymentMilestone]:
        """Cancel every unpaid milestone of a campaign"""
        cancelled = await self.repository.cancel_campaign_milestones(campaign_id)
        logger.info(f"Cancelled {len(cancelled)} milestones of campaign {campaign_id}")
        return cancelled


__all__ = ["MilestoneEngine", "split_amount", "add_months"]
