"""
Settlement Repository

Data access layer for the settlement schema (asyncpg).

Every status change is a conditional UPDATE ... WHERE "Status" = ANY(...)
RETURNING *, so concurrent webhooks, sweeps and requests race on the row
and exactly one of them wins. Multi-row effects (milestone PAID plus the
campaign's paid amount, payout RELEASED plus the campaign's released
amount, withdrawal balance check plus insert) run in one database
transaction.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Type, TypeVar

import asyncpg
from pydantic.alias_generators import to_pascal

from core.postgres_client import PostgresClient

from .models import (
    BALANCE_HOLDING_WITHDRAWAL_STATUSES,
    CHARGEABLE_MILESTONE_STATUSES,
    IN_FLIGHT_TRANSACTION_STATUSES,
    OPEN_WITHDRAWAL_STATUSES,
    Campaign,
    GatewayName,
    InfluencerBankAccount,
    InfluencerPayout,
    MilestoneStatus,
    PaymentMethod,
    PaymentMilestone,
    PayoutStatus,
    PlatformSetting,
    SettlementRecord,
    Transaction,
    TransactionStatus,
    WebhookEventRecord,
    Withdrawal,
    WithdrawalStatus,
)

logger = logging.getLogger(__name__)

SCHEMA = "settlement"

R = TypeVar("R", bound=SettlementRecord)


def _table(name: str) -> str:
    return f'{SCHEMA}."{name}"'


CAMPAIGNS = _table("Campaigns")
MILESTONES = _table("PaymentMilestones")
TRANSACTIONS = _table("Transactions")
PAYOUTS = _table("InfluencerPayouts")
WITHDRAWALS = _table("Withdrawals")
BANK_ACCOUNTS = _table("InfluencerBankAccounts")
PAYMENT_METHODS = _table("PaymentMethods")
SETTINGS = _table("PlatformSettings")
WEBHOOK_EVENTS = _table("WebhookEvents")

# Tables without an UpdatedAt column
_NO_UPDATED_AT = {PAYMENT_METHODS, WEBHOOK_EVENTS}


def _value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _values(items: Sequence[Any]) -> List[Any]:
    return [_value(item) for item in items]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _RowMoved(Exception):
    """Rolls back a multi-row edit when one row is no longer in the expected status"""


class SettlementRepository:
    """Settlement data access repository"""

    def __init__(self, db: Optional[PostgresClient] = None):
        self.db = db or PostgresClient("settlement_service")
        logger.info("SettlementRepository initialized with PostgresClient")

    async def initialize(self):
        await self.db.connect()

    async def close(self):
        await self.db.close()

    async def check_connection(self) -> bool:
        result = await self.db.health_check()
        return result.get("healthy", False)

    # ====================
    # Helpers
    # ====================

    @staticmethod
    def _to_model(model: Type[R], row: Optional[Dict[str, Any]]) -> Optional[R]:
        return model.model_validate(row) if row else None

    @staticmethod
    def _to_models(model: Type[R], rows: List[Dict[str, Any]]) -> List[R]:
        return [model.model_validate(row) for row in rows]

    async def _insert(self, table: str, record: SettlementRecord, executor=None) -> Dict[str, Any]:
        row = record.to_row()
        now = _now()
        for timestamp in ("CreatedAt", "UpdatedAt", "ReceivedAt"):
            if timestamp in row and row[timestamp] is None:
                row[timestamp] = now

        columns = ", ".join(f'"{column}"' for column in row)
        placeholders = ", ".join(f"${i}" for i in range(1, len(row) + 1))
        sql = f"INSERT INTO {table} ({columns}) VALUES ({placeholders}) RETURNING *"
        return await (executor or self.db).query_row(sql, list(row.values()))

    async def _transition(
        self,
        table: str,
        status_column: str,
        record_id: str,
        from_statuses: Sequence[Enum],
        to_status: Optional[Enum],
        fields: Optional[Dict[str, Any]] = None,
        executor=None,
    ) -> Optional[Dict[str, Any]]:
        """Conditional UPDATE keyed on the current status; None when the row was elsewhere"""
        assignments: Dict[str, Any] = {}
        if to_status is not None:
            assignments[status_column] = _value(to_status)
        for field, value in (fields or {}).items():
            assignments[to_pascal(field)] = _value(value)
        if table not in _NO_UPDATED_AT:
            assignments["UpdatedAt"] = _now()

        set_clause = ", ".join(f'"{column}" = ${i}' for i, column in enumerate(assignments, start=3))
        sql = f"""
            UPDATE {table} SET {set_clause}
            WHERE "Id" = $1 AND "{status_column}" = ANY($2::text[])
            RETURNING *
        """
        params = [record_id, _values(from_statuses), *assignments.values()]
        return await (executor or self.db).query_row(sql, params)

    # ====================
    # Campaigns
    # ====================

    async def create_campaign(self, campaign: Campaign) -> Campaign:
        try:
            row = await self._insert(CAMPAIGNS, campaign)
            return Campaign.model_validate(row)
        except asyncpg.UniqueViolationError:
            logger.info(f"Campaign {campaign.id} already exists")
            return await self.get_campaign(campaign.id)
        except Exception as e:
            logger.error(f"Failed to create campaign {campaign.id}: {e}")
            raise

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        row = await self.db.query_row(f'SELECT * FROM {CAMPAIGNS} WHERE "Id" = $1', [campaign_id])
        return self._to_model(Campaign, row)

    async def list_brand_campaigns(self, brand_id: str) -> List[Campaign]:
        rows = await self.db.query(
            f'SELECT * FROM {CAMPAIGNS} WHERE "BrandId" = $1 ORDER BY "CreatedAt"', [brand_id]
        )
        return self._to_models(Campaign, rows)

    # ====================
    # Milestones
    # ====================

    async def create_milestones(self, milestones: List[PaymentMilestone]) -> List[PaymentMilestone]:
        if not milestones:
            return []
        try:
            async with self.db.transaction() as tx:
                rows = [await self._insert(MILESTONES, milestone, tx) for milestone in milestones]
            return self._to_models(PaymentMilestone, rows)
        except asyncpg.UniqueViolationError:
            logger.info(f"Campaign {milestones[0].campaign_id} already has a milestone schedule")
            return []
        except Exception as e:
            logger.error(f"Failed to create milestones for campaign {milestones[0].campaign_id}: {e}")
            raise

    async def mark_milestone_paid(
        self, milestone_id: str, transaction_id: Optional[str], paid_at: datetime
    ) -> Optional[PaymentMilestone]:
        try:
            async with self.db.transaction() as tx:
                row = await self._transition(
                    MILESTONES,
                    "Status",
                    milestone_id,
                    CHARGEABLE_MILESTONE_STATUSES,
                    MilestoneStatus.PAID,
                    {"transaction_id": transaction_id, "paid_at": paid_at, "failure_message": None},
                    tx,
                )
                if row is None:
                    return None
                await tx.execute(
                    f"""
                    UPDATE {CAMPAIGNS}
                    SET "PaidAmountInPence" = "PaidAmountInPence" + $2, "UpdatedAt" = $3
                    WHERE "Id" = $1
                    """,
                    [row["CampaignId"], row["AmountInPence"], _now()],
                )
            return PaymentMilestone.model_validate(row)
        except Exception as e:
            logger.error(f"Failed to mark milestone {milestone_id} PAID: {e}")
            raise

    async def get_milestone(self, milestone_id: str) -> Optional[PaymentMilestone]:
        row = await self.db.query_row(f'SELECT * FROM {MILESTONES} WHERE "Id" = $1', [milestone_id])
        return self._to_model(PaymentMilestone, row)

    async def get_campaign_milestones(self, campaign_id: str) -> List[PaymentMilestone]:
        rows = await self.db.query(
            f'SELECT * FROM {MILESTONES} WHERE "CampaignId" = $1 ORDER BY "MilestoneNumber"', [campaign_id]
        )
        return self._to_models(PaymentMilestone, rows)

    async def update_milestone_status(
        self,
        milestone_id: str,
        from_statuses: Sequence[MilestoneStatus],
        to_status: MilestoneStatus,
        fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[PaymentMilestone]:
        try:
            row = await self._transition(MILESTONES, "Status", milestone_id, from_statuses, to_status, fields)
            return self._to_model(PaymentMilestone, row)
        except Exception as e:
            logger.error(f"Failed to update milestone {milestone_id} to {_value(to_status)}: {e}")
            raise

    async def update_milestones(
        self,
        changes: Dict[str, Dict[str, Any]],
        from_statuses: Sequence[MilestoneStatus],
    ) -> List[PaymentMilestone]:
        rows = []
        try:
            async with self.db.transaction() as tx:
                for milestone_id, fields in changes.items():
                    fields = dict(fields)
                    to_status = fields.pop("status", None)
                    row = await self._transition(
                        MILESTONES, "Status", milestone_id, from_statuses, to_status, fields, tx
                    )
                    if row is None:
                        raise _RowMoved(milestone_id)
                    rows.append(row)
        except _RowMoved as e:
            logger.info(f"Milestone {e} changed status during the edit; nothing written")
            return []
        except Exception as e:
            logger.error(f"Failed to update milestones {list(changes)}: {e}")
            raise
        return self._to_models(PaymentMilestone, rows)

    async def increment_milestone_attempts(self, milestone_id: str, attempted_at: datetime) -> Optional[PaymentMilestone]:
        row = await self.db.query_row(
            f"""
            UPDATE {MILESTONES}
            SET "AttemptCount" = "AttemptCount" + 1, "LastAttemptAt" = $2, "UpdatedAt" = $2
            WHERE "Id" = $1
            RETURNING *
            """,
            [milestone_id, attempted_at],
        )
        return self._to_model(PaymentMilestone, row)

    async def mark_overdue_milestones(self, now: datetime) -> List[PaymentMilestone]:
        rows = await self.db.query(
            f"""
            UPDATE {MILESTONES}
            SET "Status" = $1, "UpdatedAt" = $3
            WHERE "Status" = $2 AND "DueDate" <= $3
            RETURNING *
            """,
            [MilestoneStatus.OVERDUE.value, MilestoneStatus.PENDING.value, now],
        )
        return self._to_models(PaymentMilestone, rows)

    async def cancel_campaign_milestones(self, campaign_id: str) -> List[PaymentMilestone]:
        rows = await self.db.query(
            f"""
            UPDATE {MILESTONES}
            SET "Status" = $2, "UpdatedAt" = $4
            WHERE "CampaignId" = $1 AND "Status" = ANY($3::text[])
            RETURNING *
            """,
            [campaign_id, MilestoneStatus.CANCELLED.value, _values(CHARGEABLE_MILESTONE_STATUSES), _now()],
        )
        return self._to_models(PaymentMilestone, rows)

    async def get_chargeable_milestones(self, now: datetime, max_attempts: int, limit: int = 500) -> List[PaymentMilestone]:
        rows = await self.db.query(
            f"""
            SELECT m.* FROM {MILESTONES} m
            JOIN {CAMPAIGNS} c ON c."Id" = m."CampaignId"
            WHERE m."Status" = ANY($1::text[])
              AND m."DueDate" <= $2
              AND m."AttemptCount" < $3
              AND c."IsRecurringEnabled" = TRUE
            ORDER BY m."DueDate"
            LIMIT $4
            """,
            [_values(CHARGEABLE_MILESTONE_STATUSES), now, max_attempts, limit],
        )
        return self._to_models(PaymentMilestone, rows)

    async def get_paid_milestones_without_payout(self, limit: int = 500) -> List[PaymentMilestone]:
        rows = await self.db.query(
            f"""
            SELECT m.* FROM {MILESTONES} m
            LEFT JOIN {PAYOUTS} p ON p."MilestoneId" = m."Id"
            WHERE m."Status" = $1 AND p."Id" IS NULL
            ORDER BY m."PaidAt"
            LIMIT $2
            """,
            [MilestoneStatus.PAID.value, limit],
        )
        return self._to_models(PaymentMilestone, rows)

    # ====================
    # Transactions
    # ====================

    async def create_transaction(self, transaction: Transaction) -> Optional[Transaction]:
        try:
            row = await self._insert(TRANSACTIONS, transaction)
            return Transaction.model_validate(row)
        except asyncpg.UniqueViolationError:
            logger.info(f"Milestone {transaction.milestone_id} already has an in-flight transaction")
            return None
        except Exception as e:
            logger.error(f"Failed to create transaction {transaction.transaction_reference}: {e}")
            raise

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        row = await self.db.query_row(f'SELECT * FROM {TRANSACTIONS} WHERE "Id" = $1', [transaction_id])
        return self._to_model(Transaction, row)

    async def get_transaction_by_reference(self, transaction_reference: str) -> Optional[Transaction]:
        row = await self.db.query_row(
            f'SELECT * FROM {TRANSACTIONS} WHERE "TransactionReference" = $1', [transaction_reference]
        )
        return self._to_model(Transaction, row)

    async def get_transaction_by_gateway_payment_id(
        self, gateway_payment_id: str, gateway: Optional[GatewayName] = None
    ) -> Optional[Transaction]:
        if gateway is not None:
            row = await self.db.query_row(
                f'SELECT * FROM {TRANSACTIONS} WHERE "GatewayPaymentId" = $1 AND "Gateway" = $2',
                [gateway_payment_id, gateway.value],
            )
        else:
            row = await self.db.query_row(
                f'SELECT * FROM {TRANSACTIONS} WHERE "GatewayPaymentId" = $1', [gateway_payment_id]
            )
        return self._to_model(Transaction, row)

    async def get_in_flight_transaction(self, milestone_id: str) -> Optional[Transaction]:
        row = await self.db.query_row(
            f"""
            SELECT * FROM {TRANSACTIONS}
            WHERE "MilestoneId" = $1 AND "TransactionStatus" = ANY($2::text[])
            ORDER BY "CreatedAt" DESC
            LIMIT 1
            """,
            [milestone_id, _values(IN_FLIGHT_TRANSACTION_STATUSES)],
        )
        return self._to_model(Transaction, row)

    async def update_transaction_status(
        self,
        transaction_id: str,
        from_statuses: Sequence[TransactionStatus],
        to_status: TransactionStatus,
        fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[Transaction]:
        try:
            row = await self._transition(
                TRANSACTIONS, "TransactionStatus", transaction_id, from_statuses, to_status, fields
            )
            return self._to_model(Transaction, row)
        except Exception as e:
            logger.error(f"Failed to update transaction {transaction_id} to {_value(to_status)}: {e}")
            raise

    async def update_transaction_fields(self, transaction_id: str, fields: Dict[str, Any]) -> Optional[Transaction]:
        if not fields:
            return await self.get_transaction(transaction_id)
        row = await self._transition(
            TRANSACTIONS, "TransactionStatus", transaction_id, list(TransactionStatus), None, fields
        )
        return self._to_model(Transaction, row)

    async def get_stale_in_flight_transactions(self, older_than: datetime, limit: int = 500) -> List[Transaction]:
        rows = await self.db.query(
            f"""
            SELECT * FROM {TRANSACTIONS}
            WHERE "TransactionStatus" = ANY($1::text[]) AND "UpdatedAt" < $2
            ORDER BY "UpdatedAt"
            LIMIT $3
            """,
            [_values(IN_FLIGHT_TRANSACTION_STATUSES), older_than, limit],
        )
        return self._to_models(Transaction, rows)

    async def get_unsettled_completed_transactions(self, limit: int = 500) -> List[Transaction]:
        rows = await self.db.query(
            f"""
            SELECT t.* FROM {TRANSACTIONS} t
            JOIN {MILESTONES} m ON m."Id" = t."MilestoneId"
            WHERE t."TransactionStatus" = $1 AND m."Status" = ANY($2::text[])
            ORDER BY t."CompletedAt"
            LIMIT $3
            """,
            [TransactionStatus.COMPLETED.value, _values(CHARGEABLE_MILESTONE_STATUSES), limit],
        )
        return self._to_models(Transaction, rows)

    # ====================
    # Payouts
    # ====================

    async def _add_released(self, tx, payout_row: Dict[str, Any]):
        await tx.execute(
            f"""
            UPDATE {CAMPAIGNS}
            SET "ReleasedToInfluencerInPence" = "ReleasedToInfluencerInPence" + $2, "UpdatedAt" = $3
            WHERE "Id" = $1
            """,
            [payout_row["CampaignId"], payout_row["NetAmountInPence"], _now()],
        )

    async def create_payout(self, payout: InfluencerPayout) -> Optional[InfluencerPayout]:
        try:
            async with self.db.transaction() as tx:
                row = await self._insert(PAYOUTS, payout, tx)
                if row["Status"] == PayoutStatus.RELEASED.value:
                    await self._add_released(tx, row)
            return InfluencerPayout.model_validate(row)
        except asyncpg.UniqueViolationError:
            logger.info(f"Milestone {payout.milestone_id} already has a payout")
            return None
        except Exception as e:
            logger.error(f"Failed to create payout for milestone {payout.milestone_id}: {e}")
            raise

    async def get_payout(self, payout_id: str) -> Optional[InfluencerPayout]:
        row = await self.db.query_row(f'SELECT * FROM {PAYOUTS} WHERE "Id" = $1', [payout_id])
        return self._to_model(InfluencerPayout, row)

    async def get_payout_by_milestone(self, milestone_id: str) -> Optional[InfluencerPayout]:
        row = await self.db.query_row(f'SELECT * FROM {PAYOUTS} WHERE "MilestoneId" = $1', [milestone_id])
        return self._to_model(InfluencerPayout, row)

    async def get_campaign_payouts(self, campaign_id: str) -> List[InfluencerPayout]:
        rows = await self.db.query(
            f'SELECT * FROM {PAYOUTS} WHERE "CampaignId" = $1 ORDER BY "CreatedAt"', [campaign_id]
        )
        return self._to_models(InfluencerPayout, rows)

    async def get_influencer_payouts(
        self, influencer_id: str, statuses: Optional[Sequence[PayoutStatus]] = None
    ) -> List[InfluencerPayout]:
        if statuses:
            rows = await self.db.query(
                f"""
                SELECT * FROM {PAYOUTS}
                WHERE "InfluencerId" = $1 AND "Status" = ANY($2::text[])
                ORDER BY "CreatedAt" DESC
                """,
                [influencer_id, _values(statuses)],
            )
        else:
            rows = await self.db.query(
                f'SELECT * FROM {PAYOUTS} WHERE "InfluencerId" = $1 ORDER BY "CreatedAt" DESC', [influencer_id]
            )
        return self._to_models(InfluencerPayout, rows)

    async def update_payout_status(
        self,
        payout_id: str,
        from_statuses: Sequence[PayoutStatus],
        to_status: PayoutStatus,
        fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[InfluencerPayout]:
        try:
            async with self.db.transaction() as tx:
                row = await self._transition(PAYOUTS, "Status", payout_id, from_statuses, to_status, fields, tx)
                if row is not None and to_status == PayoutStatus.RELEASED:
                    await self._add_released(tx, row)
            return self._to_model(InfluencerPayout, row)
        except Exception as e:
            logger.error(f"Failed to update payout {payout_id} to {_value(to_status)}: {e}")
            raise

    async def sum_payouts(self, influencer_id: str, currency: str, statuses: Sequence[PayoutStatus]) -> int:
        row = await self.db.query_row(
            f"""
            SELECT COALESCE(SUM("NetAmountInPence"), 0) AS total FROM {PAYOUTS}
            WHERE "InfluencerId" = $1 AND "Currency" = $2 AND "Status" = ANY($3::text[])
            """,
            [influencer_id, currency, _values(statuses)],
        )
        return int(row["total"]) if row else 0

    # ====================
    # Withdrawals
    # ====================

    async def create_withdrawal_if_funded(self, withdrawal: Withdrawal) -> Optional[Withdrawal]:
        try:
            async with self.db.transaction() as tx:
                # Serialize withdrawal requests of one influencer and currency
                await tx.execute(
                    "SELECT pg_advisory_xact_lock(hashtext($1))",
                    [f"withdrawal:{withdrawal.influencer_id}:{withdrawal.currency}"],
                )
                balance = await tx.query_row(
                    f"""
                    SELECT
                        (SELECT COALESCE(SUM("NetAmountInPence"), 0) FROM {PAYOUTS}
                         WHERE "InfluencerId" = $1 AND "Currency" = $2 AND "Status" = $3)
                      - (SELECT COALESCE(SUM("AmountInPence"), 0) FROM {WITHDRAWALS}
                         WHERE "InfluencerId" = $1 AND "Currency" = $2 AND "Status" = ANY($4::text[]))
                      AS available
                    """,
                    [
                        withdrawal.influencer_id,
                        withdrawal.currency,
                        PayoutStatus.RELEASED.value,
                        _values(BALANCE_HOLDING_WITHDRAWAL_STATUSES),
                    ],
                )
                available = int(balance["available"]) if balance else 0
                if withdrawal.amount_in_pence > available:
                    logger.info(
                        f"Withdrawal of {withdrawal.amount_in_pence} {withdrawal.currency} for "
                        f"{withdrawal.influencer_id} exceeds available {available}"
                    )
                    return None
                row = await self._insert(WITHDRAWALS, withdrawal, tx)
            return Withdrawal.model_validate(row)
        except Exception as e:
            logger.error(f"Failed to create withdrawal {withdrawal.withdrawal_reference}: {e}")
            raise

    async def get_withdrawal(self, withdrawal_id: str) -> Optional[Withdrawal]:
        row = await self.db.query_row(f'SELECT * FROM {WITHDRAWALS} WHERE "Id" = $1', [withdrawal_id])
        return self._to_model(Withdrawal, row)

    async def get_withdrawal_by_reference(self, withdrawal_reference: str) -> Optional[Withdrawal]:
        row = await self.db.query_row(
            f'SELECT * FROM {WITHDRAWALS} WHERE "WithdrawalReference" = $1', [withdrawal_reference]
        )
        return self._to_model(Withdrawal, row)

    async def get_withdrawal_by_transfer_code(self, gateway_transfer_code: str) -> Optional[Withdrawal]:
        row = await self.db.query_row(
            f'SELECT * FROM {WITHDRAWALS} WHERE "GatewayTransferCode" = $1', [gateway_transfer_code]
        )
        return self._to_model(Withdrawal, row)

    async def update_withdrawal_status(
        self,
        withdrawal_id: str,
        from_statuses: Sequence[WithdrawalStatus],
        to_status: WithdrawalStatus,
        fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[Withdrawal]:
        try:
            row = await self._transition(WITHDRAWALS, "Status", withdrawal_id, from_statuses, to_status, fields)
            return self._to_model(Withdrawal, row)
        except Exception as e:
            logger.error(f"Failed to update withdrawal {withdrawal_id} to {_value(to_status)}: {e}")
            raise

    async def sum_withdrawals(self, influencer_id: str, currency: str, statuses: Sequence[WithdrawalStatus]) -> int:
        row = await self.db.query_row(
            f"""
            SELECT COALESCE(SUM("AmountInPence"), 0) AS total FROM {WITHDRAWALS}
            WHERE "InfluencerId" = $1 AND "Currency" = $2 AND "Status" = ANY($3::text[])
            """,
            [influencer_id, currency, _values(statuses)],
        )
        return int(row["total"]) if row else 0

    async def get_influencer_withdrawals(
        self, influencer_id: str, currency: Optional[str] = None
    ) -> List[Withdrawal]:
        rows = await self.db.query(
            f"""
            SELECT * FROM {WITHDRAWALS}
            WHERE "InfluencerId" = $1 AND ($2::text IS NULL OR "Currency" = $2)
            ORDER BY "CreatedAt" DESC
            """,
            [influencer_id, currency],
        )
        return self._to_models(Withdrawal, rows)

    async def get_stale_open_withdrawals(self, older_than: datetime, limit: int = 500) -> List[Withdrawal]:
        rows = await self.db.query(
            f"""
            SELECT * FROM {WITHDRAWALS}
            WHERE "Status" = ANY($1::text[]) AND "UpdatedAt" < $2
            ORDER BY "UpdatedAt"
            LIMIT $3
            """,
            [_values(OPEN_WITHDRAWAL_STATUSES), older_than, limit],
        )
        return self._to_models(Withdrawal, rows)

    # ====================
    # Bank accounts / payment methods
    # ====================

    async def create_bank_account(self, account: InfluencerBankAccount) -> InfluencerBankAccount:
        try:
            async with self.db.transaction() as tx:
                if account.is_default:
                    await tx.execute(
                        f"""
                        UPDATE {BANK_ACCOUNTS} SET "IsDefault" = FALSE, "UpdatedAt" = $3
                        WHERE "InfluencerId" = $1 AND "Currency" = $2 AND "IsDefault" = TRUE
                        """,
                        [account.influencer_id, account.currency, _now()],
                    )
                row = await self._insert(BANK_ACCOUNTS, account, tx)
            return InfluencerBankAccount.model_validate(row)
        except Exception as e:
            logger.error(f"Failed to create bank account for {account.influencer_id}: {e}")
            raise

    async def get_bank_account(self, bank_account_id: str) -> Optional[InfluencerBankAccount]:
        row = await self.db.query_row(f'SELECT * FROM {BANK_ACCOUNTS} WHERE "Id" = $1', [bank_account_id])
        return self._to_model(InfluencerBankAccount, row)

    async def get_default_bank_account(self, influencer_id: str, currency: str) -> Optional[InfluencerBankAccount]:
        row = await self.db.query_row(
            f"""
            SELECT * FROM {BANK_ACCOUNTS}
            WHERE "InfluencerId" = $1 AND "Currency" = $2 AND "IsDefault" = TRUE
            LIMIT 1
            """,
            [influencer_id, currency],
        )
        return self._to_model(InfluencerBankAccount, row)

    async def get_influencer_bank_accounts(self, influencer_id: str) -> List[InfluencerBankAccount]:
        rows = await self.db.query(
            f"""
            SELECT * FROM {BANK_ACCOUNTS}
            WHERE "InfluencerId" = $1
            ORDER BY "Currency", "IsDefault" DESC, "CreatedAt" DESC
            """,
            [influencer_id],
        )
        return self._to_models(InfluencerBankAccount, rows)

    async def create_payment_method(self, payment_method: PaymentMethod) -> PaymentMethod:
        try:
            async with self.db.transaction() as tx:
                if payment_method.is_default:
                    # One default per user across gateways (UX_PaymentMethods_DefaultPerUser)
                    await tx.execute(
                        f"""
                        UPDATE {PAYMENT_METHODS} SET "IsDefault" = FALSE
                        WHERE "UserId" = $1 AND "IsDefault" = TRUE
                        """,
                        [payment_method.user_id],
                    )
                row = await self._insert(PAYMENT_METHODS, payment_method, tx)
            return PaymentMethod.model_validate(row)
        except Exception as e:
            logger.error(f"Failed to save payment method for {payment_method.user_id}: {e}")
            raise

    async def get_payment_method(self, payment_method_id: str) -> Optional[PaymentMethod]:
        row = await self.db.query_row(f'SELECT * FROM {PAYMENT_METHODS} WHERE "Id" = $1', [payment_method_id])
        return self._to_model(PaymentMethod, row)

    async def get_default_payment_method(self, user_id: str) -> Optional[PaymentMethod]:
        row = await self.db.query_row(
            f"""
            SELECT * FROM {PAYMENT_METHODS}
            WHERE "UserId" = $1 AND "IsDefault" = TRUE AND "IsReusable" = TRUE
            LIMIT 1
            """,
            [user_id],
        )
        return self._to_model(PaymentMethod, row)

    async def get_charge_payment_method(self, user_id: str, gateway: GatewayName) -> Optional[PaymentMethod]:
        row = await self.db.query_row(
            f"""
            SELECT * FROM {PAYMENT_METHODS}
            WHERE "UserId" = $1 AND "Gateway" = $2 AND "IsReusable" = TRUE
            ORDER BY "IsDefault" DESC, "CreatedAt" DESC
            LIMIT 1
            """,
            [user_id, gateway.value],
        )
        return self._to_model(PaymentMethod, row)

    async def list_payment_methods(self, user_id: str) -> List[PaymentMethod]:
        rows = await self.db.query(
            f"""
            SELECT * FROM {PAYMENT_METHODS}
            WHERE "UserId" = $1 AND "IsReusable" = TRUE
            ORDER BY "IsDefault" DESC, "CreatedAt" DESC
            """,
            [user_id],
        )
        return self._to_models(PaymentMethod, rows)

    async def set_default_payment_method(self, user_id: str, payment_method_id: str) -> Optional[PaymentMethod]:
        try:
            async with self.db.transaction() as tx:
                target = await tx.query_row(
                    f"""
                    SELECT "Id" FROM {PAYMENT_METHODS}
                    WHERE "Id" = $1 AND "UserId" = $2 AND "IsReusable" = TRUE
                    FOR UPDATE
                    """,
                    [payment_method_id, user_id],
                )
                if target is None:
                    return None
                # Clear first: the partial unique index is checked row by row
                await tx.execute(
                    f"""
                    UPDATE {PAYMENT_METHODS} SET "IsDefault" = FALSE
                    WHERE "UserId" = $1 AND "IsDefault" = TRUE AND "Id" <> $2
                    """,
                    [user_id, payment_method_id],
                )
                row = await tx.query_row(
                    f'UPDATE {PAYMENT_METHODS} SET "IsDefault" = TRUE WHERE "Id" = $1 RETURNING *',
                    [payment_method_id],
                )
            return self._to_model(PaymentMethod, row)
        except Exception as e:
            logger.error(f"Failed to set default payment method {payment_method_id} for {user_id}: {e}")
            raise

    async def deactivate_payment_method(self, user_id: str, payment_method_id: str) -> Optional[PaymentMethod]:
        row = await self.db.query_row(
            f"""
            UPDATE {PAYMENT_METHODS} SET "IsReusable" = FALSE, "IsDefault" = FALSE
            WHERE "Id" = $1 AND "UserId" = $2 AND "IsReusable" = TRUE
            RETURNING *
            """,
            [payment_method_id, user_id],
        )
        return self._to_model(PaymentMethod, row)

    async def get_payment_method_by_authorization(self, user_id: str, authorization_code: str) -> Optional[PaymentMethod]:
        row = await self.db.query_row(
            f'SELECT * FROM {PAYMENT_METHODS} WHERE "UserId" = $1 AND "AuthorizationCode" = $2',
            [user_id, authorization_code],
        )
        return self._to_model(PaymentMethod, row)

    # ====================
    # Platform settings
    # ====================

    async def get_setting(self, setting_key: str) -> Optional[PlatformSetting]:
        row = await self.db.query_row(f'SELECT * FROM {SETTINGS} WHERE "SettingKey" = $1', [setting_key])
        return self._to_model(PlatformSetting, row)

    async def upsert_setting(self, setting: PlatformSetting) -> PlatformSetting:
        try:
            row = await self.db.query_row(
                f"""
                INSERT INTO {SETTINGS} ("SettingKey", "SettingValue", "Description", "UpdatedBy", "UpdatedAt")
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT ("SettingKey") DO UPDATE SET
                    "SettingValue" = EXCLUDED."SettingValue",
                    "Description" = COALESCE(EXCLUDED."Description", {SETTINGS}."Description"),
                    "UpdatedBy" = EXCLUDED."UpdatedBy",
                    "UpdatedAt" = EXCLUDED."UpdatedAt"
                RETURNING *
                """,
                [setting.setting_key, setting.setting_value, setting.description, setting.updated_by, _now()],
            )
            return PlatformSetting.model_validate(row)
        except Exception as e:
            logger.error(f"Failed to upsert setting {setting.setting_key}: {e}")
            raise

    # ====================
    # Webhook audit
    # ====================

    async def record_webhook_event(self, record: WebhookEventRecord) -> WebhookEventRecord:
        row = await self._insert(WEBHOOK_EVENTS, record)
        return WebhookEventRecord.model_validate(row)

    async def mark_webhook_event_matched(self, record_id: str, matched_entity: str, matched_id: str) -> None:
        await self.db.execute(
            f'UPDATE {WEBHOOK_EVENTS} SET "MatchedEntity" = $2, "MatchedId" = $3 WHERE "Id" = $1',
            [record_id, matched_entity, matched_id],
        )


__all__ = ["SettlementRepository"]
