"""
Settlement Service Event Handlers

Handlers for events from the campaign booking service
"""

import logging
from typing import TYPE_CHECKING, Any, Dict

from pydantic import ValidationError

from ..models import Campaign, PaymentType
from ..protocols import SettlementServiceError

if TYPE_CHECKING:
    from ..milestone_engine import MilestoneEngine

logger = logging.getLogger(__name__)


def extract_event_data(event) -> Dict[str, Any]:
    """Event payload whether the bus hands over an Event or a plain dict"""
    if hasattr(event, "data"):
        return event.data or {}
    if isinstance(event, dict):
        return event.get("data", event)
    return {}


async def handle_campaign_booked(event_data: Dict[str, Any], milestone_engine: "MilestoneEngine") -> None:
    """
    Handle campaign.booked event

    Registers the campaign and creates its milestone schedule. Redelivery of
    the same booking returns the existing schedule.
    """
    campaign_id = event_data.get("campaign_id")
    if not campaign_id:
        logger.warning("campaign.booked event missing campaign_id")
        return

    try:
        payment_type = PaymentType(event_data.get("payment_type", PaymentType.MILESTONE.value))
        campaign = Campaign(
            id=campaign_id,
            brand_id=event_data.get("brand_id"),
            influencer_id=event_data.get("influencer_id"),
            total_amount_in_pence=int(event_data.get("total_amount_in_pence", 0)),
            currency=event_data.get("currency", ""),
            payment_type=payment_type,
            is_recurring_enabled=bool(event_data.get("is_recurring_enabled", False)),
            number_of_milestones=int(event_data.get("number_of_milestones") or 1),
            start_date=event_data.get("start_date"),
        )
        milestones = await milestone_engine.register_campaign(campaign)
        logger.info(f"Campaign {campaign_id} booked with {len(milestones)} milestones")

    except (ValidationError, ValueError, TypeError, SettlementServiceError) as e:
        # Malformed booking; redelivery would fail the same way
        logger.error(f"❌ Rejected campaign.booked event for {campaign_id}: {e}")


async def handle_campaign_cancelled(event_data: Dict[str, Any], milestone_engine: "MilestoneEngine") -> None:
    """
    Handle campaign.cancelled event

    Unpaid milestones become CANCELLED; paid ones and their payouts are untouched.
    """
    campaign_id = event_data.get("campaign_id")
    if not campaign_id:
        logger.warning("campaign.cancelled event missing campaign_id")
        return

    cancelled = await milestone_engine.cancel_campaign_milestones(campaign_id)
    logger.info(f"Campaign {campaign_id} cancelled; {len(cancelled)} milestones cancelled")


def get_event_handlers(milestone_engine: "MilestoneEngine") -> Dict[str, callable]:
    """
    Return a mapping of event patterns to handler functions

    Event patterns include the service prefix for proper event routing.
    Handlers that raise are nak'ed and redelivered by the bus.

    Args:
        milestone_engine: MilestoneEngine instance

    Returns:
        Dict mapping event patterns to handler functions
    """
    return {
        "campaign_service.campaign.booked": lambda event: handle_campaign_booked(
            extract_event_data(event), milestone_engine
        ),
        "campaign_service.campaign.cancelled": lambda event: handle_campaign_cancelled(
            extract_event_data(event), milestone_engine
        ),
    }
