"""
Settlement Service

Payment settlement engine for the influencer marketplace.

Features:
- Campaign milestone schedules with exact integer splits
- Brand charges through Stripe, TrueLayer and Paystack
- Webhook reconciliation with idempotent status transitions
- Influencer payouts net of platform fees
- Balance-checked withdrawals to registered bank accounts
- Scheduled sweep for overdue milestones, auto-charge and recovery
"""

__version__ = "1.0.0"
__service__ = "settlement_service"
