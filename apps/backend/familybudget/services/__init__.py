"""
Services package

Pipeline services: sync, alerting, spending status, subscriptions, digests.
"""

from .alert_ledger import AlertLedger
from .notifier import Notifier
from .renewals import RenewalService, update_monthly_spending
from .spending_status import SpendingStatusService
from .subscriptions import SubscriptionService
from .summaries import SummaryService
from .transaction_sync import TransactionSyncService, link_card, sync_all

__all__ = [
    "AlertLedger",
    "Notifier",
    "RenewalService",
    "SpendingStatusService",
    "SubscriptionService",
    "SummaryService",
    "TransactionSyncService",
    "link_card",
    "sync_all",
    "update_monthly_spending",
]
