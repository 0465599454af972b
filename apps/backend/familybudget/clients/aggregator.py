"""
Card-data aggregator client

The pipeline needs the delta-sync contract
``sync(access_token, cursor) -> SyncPage`` and, for linking cards,
``exchange_public_token``. ``PlaidAggregator`` maps Plaid's
``/transactions/sync`` response onto that contract.
"""

from __future__ import annotations

import json
import logging
from datetime import date
from typing import Any, Protocol

import plaid
from plaid.api import plaid_api
from plaid.model.accounts_get_request import AccountsGetRequest
from plaid.model.item_public_token_exchange_request import ItemPublicTokenExchangeRequest
from plaid.model.transactions_sync_request import TransactionsSyncRequest
from plaid.model.transactions_sync_request_options import TransactionsSyncRequestOptions

from familybudget.core.config import settings
from familybudget.core.errors import AggregatorError, ConfigurationError
from familybudget.schemas import AggregatorTransaction, LinkedAccount, SyncPage

logger = logging.getLogger(__name__)

SYNC_PAGE_SIZE = 100


class Aggregator(Protocol):
    def sync(self, access_token: str, cursor: str | None) -> SyncPage: ...

    def exchange_public_token(self, public_token: str) -> LinkedAccount: ...


def _plaid_host(env: str) -> str:
    env = (env or "sandbox").lower()
    if env == "production":
        return plaid.Environment.Production
    if env == "development":
        # Newer SDKs dropped the development host
        return getattr(plaid.Environment, "Development", plaid.Environment.Sandbox)
    return plaid.Environment.Sandbox


def build_plaid_client(
    client_id: str | None = None,
    secret: str | None = None,
    env: str | None = None,
) -> plaid_api.PlaidApi:
    client_id = client_id or settings.PLAID_CLIENT_ID
    secret = secret or settings.PLAID_SECRET
    if not client_id or not secret:
        raise ConfigurationError("Plaid credentials are not configured")
    configuration = plaid.Configuration(
        host=_plaid_host(env or settings.PLAID_ENV),
        api_key={
            "clientId": client_id,
            "secret": secret,
        },
    )
    return plaid_api.PlaidApi(plaid.ApiClient(configuration))


def _as_date(value: Any) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _record_from_plaid(raw: dict[str, Any]) -> AggregatorTransaction:
    pfc = raw.get("personal_finance_category") or {}
    return AggregatorTransaction(
        external_id=raw["transaction_id"],
        amount=raw.get("amount"),
        merchant_name=raw.get("merchant_name"),
        name=raw.get("name"),
        category=pfc.get("primary"),
        detailed_category=pfc.get("detailed"),
        occurred_on=_as_date(raw["date"]),
    )


def page_from_plaid(payload: dict[str, Any]) -> SyncPage:
    """Translate a ``transactions_sync`` response dict into a ``SyncPage``."""
    return SyncPage(
        added=[_record_from_plaid(item) for item in payload.get("added") or []],
        modified=[_record_from_plaid(item) for item in payload.get("modified") or []],
        removed=[item["transaction_id"] for item in payload.get("removed") or [] if item.get("transaction_id")],
        next_cursor=payload.get("next_cursor"),
        has_more=bool(payload.get("has_more")),
    )


def _api_error(operation: str, exc: plaid.ApiException) -> AggregatorError:
    code = None
    try:
        code = json.loads(exc.body or "{}").get("error_code")
    except (TypeError, ValueError):
        pass
    logger.error("Plaid %s failed: status=%s code=%s", operation, exc.status, code)
    return AggregatorError(f"Plaid {operation} failed", status=exc.status, code=code)


def _plain(value: Any) -> Any:
    # enum-like SDK models expose their string through ``value``
    return getattr(value, "value", value)


def pick_card_account(accounts: list[dict[str, Any]]) -> dict[str, Any] | None:
    """Prefer a credit card account, else the first account on the item."""
    for account in accounts:
        if _plain(account.get("type")) == "credit" or _plain(account.get("subtype")) == "credit card":
            return account
    return accounts[0] if accounts else None


class PlaidAggregator:
    def __init__(self, client: plaid_api.PlaidApi | None = None) -> None:
        self._client = client

    @property
    def client(self) -> plaid_api.PlaidApi:
        if self._client is None:
            self._client = build_plaid_client()
        return self._client

    def sync(self, access_token: str, cursor: str | None) -> SyncPage:
        kwargs: dict[str, Any] = {
            "access_token": access_token,
            "count": SYNC_PAGE_SIZE,
            "options": TransactionsSyncRequestOptions(include_personal_finance_category=True),
        }
        # Plaid rejects an explicit null cursor; omit it for a full sync
        if cursor:
            kwargs["cursor"] = cursor

        try:
            response = self.client.transactions_sync(TransactionsSyncRequest(**kwargs))
        except plaid.ApiException as exc:
            raise _api_error("transactions_sync", exc) from exc

        return page_from_plaid(response.to_dict())

    def exchange_public_token(self, public_token: str) -> LinkedAccount:
        """Swap a link-flow public token for an access token and pick the card account."""
        try:
            exchanged = self.client.item_public_token_exchange(
                ItemPublicTokenExchangeRequest(public_token=public_token)
            )
            access_token = exchanged["access_token"]
            accounts = self.client.accounts_get(AccountsGetRequest(access_token=access_token)).to_dict()
        except plaid.ApiException as exc:
            raise _api_error("public token exchange", exc) from exc

        account = pick_card_account(accounts.get("accounts") or [])
        if account is None:
            raise AggregatorError("Plaid item has no accounts", code="NO_ACCOUNTS")
        return LinkedAccount(
            access_token=access_token,
            account_id=account["account_id"],
            mask=account.get("mask"),
            name=account.get("name"),
        )
