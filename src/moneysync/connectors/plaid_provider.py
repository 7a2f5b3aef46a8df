"""Institution data provider backed by the Plaid Python SDK.

The SDK is synchronous; ``get_account_data`` runs it in a worker thread so job
handlers can await it without blocking the event loop.
"""

import asyncio
import json
import logging
import os
import time
from datetime import date, timedelta
from typing import Any, Literal, Protocol

from plaid.api import plaid_api
from plaid.api_client import ApiClient
from plaid.configuration import Configuration
from plaid.exceptions import ApiException
from plaid.model.accounts_get_request import AccountsGetRequest
from plaid.model.transactions_get_request import TransactionsGetRequest
from plaid.model.transactions_get_request_options import TransactionsGetRequestOptions

from moneysync.config import PlaidConfig
from moneysync.errors import PermanentJobError, TransientJobError
from moneysync.utils.clock import Clock, utcnow

from .plaid_schemas import AccountSchema, InstitutionData, TransactionSchema

logger = logging.getLogger(__name__)

SyncType = Literal["full", "incremental"]

# Plaid error codes that clear up on their own
TRANSIENT_PLAID_ERRORS = frozenset(
    {
        "PRODUCT_NOT_READY",
        "RATE_LIMIT_EXCEEDED",
        "INTERNAL_SERVER_ERROR",
        "INSTITUTION_DOWN",
        "INSTITUTION_NOT_RESPONDING",
        "PLANNED_MAINTENANCE",
    }
)

# Days of history fetched by a full sync
FULL_SYNC_DAYS = 730


class InstitutionProvider(Protocol):
    async def get_account_data(
        self, access_token: str, sync_type: SyncType = "incremental"
    ) -> InstitutionData: ...


class AccessTokenResolver(Protocol):
    def __call__(self, access_token_ref: str) -> str: ...


def resolve_env_access_token(access_token_ref: str) -> str:
    """Resolve an access token reference from ``PLAID_TOKEN_<REF>``.

    Raises:
        PermanentJobError: If no token is configured for the reference
    """
    name = "PLAID_TOKEN_" + access_token_ref.upper().replace("-", "_").replace(" ", "_")
    token = os.getenv(name)
    if not token:
        raise PermanentJobError(f"No access token configured in {name}")
    return token


def _plaid_error_code(exc: ApiException) -> str | None:
    body = getattr(exc, "body", None)
    if not isinstance(body, str | bytes):
        return None
    try:
        details = json.loads(body)
    except ValueError:
        return None
    return details.get("error_code") if isinstance(details, dict) else None


class PlaidInstitutionProvider:
    """Fetches accounts and transactions for one Plaid item."""

    def __init__(
        self,
        config: PlaidConfig,
        client: Any | None = None,
        clock: Clock = utcnow,
    ):
        """Initialize the Plaid client.

        Args:
            config: Plaid credentials and request tuning
            client: Prebuilt ``PlaidApi`` (tests pass a mock)
            clock: Source of the current time
        """
        if client is None and not config.is_configured:
            raise ValueError("PLAID_CLIENT_ID and PLAID_SECRET are required")
        self.config = config
        self._clock = clock

        if client is None:
            configuration = Configuration(
                host=self._get_plaid_environment(),
                api_key={"clientId": config.client_id, "secret": config.secret},
            )
            # Type as Any to avoid pyright partial-unknowns from the SDK stubs
            client = plaid_api.PlaidApi(ApiClient(configuration))
        self.client: Any = client

        logger.info(f"Initialized Plaid provider for {config.environment} environment")

    def _get_plaid_environment(self) -> str:
        env_name = self.config.environment.lower()
        if env_name == "production":
            return "https://production.plaid.com"
        if env_name == "development":
            return "https://development.plaid.com"
        return "https://sandbox.plaid.com"

    async def get_account_data(
        self, access_token: str, sync_type: SyncType = "incremental"
    ) -> InstitutionData:
        """Fetch accounts and recent transactions for an item.

        Raises:
            TransientJobError: On Plaid outages, rate limits or network errors
            PermanentJobError: When the item needs user action or the token is bad
        """
        return await asyncio.to_thread(self.fetch, access_token, sync_type)

    def fetch(self, access_token: str, sync_type: SyncType = "incremental") -> InstitutionData:
        fetched_at = self._clock()
        accounts, institution_id = self._get_accounts(access_token)
        days = FULL_SYNC_DAYS if sync_type == "full" else self.config.days_lookback
        end_date = fetched_at.date()
        transactions = self._get_transactions(
            access_token, end_date - timedelta(days=days), end_date
        )
        logger.info(
            f"Fetched {len(accounts)} account(s) and {len(transactions)} "
            f"transaction(s) ({sync_type})"
        )
        return InstitutionData(
            accounts=accounts,
            transactions=transactions,
            institution_id=institution_id,
            fetched_at=fetched_at,
        )

    def _call(self, method: str, request: Any) -> Any:
        """Call the SDK, retrying PRODUCT_NOT_READY and mapping failures."""
        for attempt in range(self.config.max_retries + 1):
            try:
                return getattr(self.client, method)(request)
            except ApiException as e:
                error_code = _plaid_error_code(e)
                if error_code == "PRODUCT_NOT_READY" and attempt < self.config.max_retries:
                    time.sleep(self.config.retry_delay)
                    continue
                status = getattr(e, "status", None) or 0
                if error_code in TRANSIENT_PLAID_ERRORS or status >= 500:
                    raise TransientJobError(f"Plaid {method} failed: {error_code or status}") from e
                raise PermanentJobError(f"Plaid {method} failed: {error_code or status}") from e
            except (ConnectionError, TimeoutError) as e:
                raise TransientJobError(f"Plaid {method} failed: {e}") from e
        raise TransientJobError(f"Plaid {method} not ready after retries")

    def _get_accounts(self, access_token: str) -> tuple[list[AccountSchema], str | None]:
        response = self._call("accounts_get", AccountsGetRequest(access_token=access_token))
        accounts = [
            AccountSchema.model_validate(acct)
            for acct in getattr(response, "accounts", [])
        ]
        institution_id = getattr(getattr(response, "item", None), "institution_id", None)
        return accounts, institution_id

    def _get_transactions(
        self, access_token: str, start_date: date, end_date: date
    ) -> list[TransactionSchema]:
        transactions: list[TransactionSchema] = []
        offset = 0
        while True:
            request = TransactionsGetRequest(
                access_token=access_token,
                start_date=start_date,
                end_date=end_date,
                options=TransactionsGetRequestOptions(
                    count=self.config.batch_size, offset=offset
                ),
            )
            response = self._call("transactions_get", request)
            page = [
                TransactionSchema.model_validate(tx)
                for tx in getattr(response, "transactions", [])
            ]
            transactions.extend(page)

            total = getattr(response, "total_transactions", 0)
            offset += self.config.batch_size
            if offset >= total or not page:
                break
        return transactions
