"""
Tenant sync orchestration.

Drives one sync request for a tenant: every selected account goes through
credentials, cache or adapter fetch, normalization, forecasting, persistence,
anomaly baselines and notification. Accounts run concurrently under a worker
limit and each one ends in a SyncOutcome; a failing account never aborts the
others.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any

from ..errors import (
    CloudProviderError,
    ErrorKind,
    InvalidRequestError,
    ValidationFailedError,
    error_kind_for,
)
from ..forecasting.enhancer import ForecastEnhancer
from ..models import ProviderRawDetail, SyncOutcome, SyncStatus
from ..monitoring.baselines import AnomalyBaselineEngine, flag_anomalies
from ..providers.base import Credentials, ProviderAdapter, ProviderFactory
from ..utils.cache import CacheKey, ResponseCache
from ..utils.data_normalizer import CostDataNormalizer, IssueSeverity, has_fatal_issue
from ..utils.resilience import CircuitBreakerRegistry, ResilientExecutor, RetryPolicy
from .interfaces import (
    AccountDirectory,
    AccountRef,
    BillingPeriod,
    CredentialStore,
    Notification,
    NotificationSink,
    NotificationType,
    PersistenceSink,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4
DEFAULT_ACCOUNT_TIMEOUT = 35.0
DEFAULT_LOOKBACK_DAYS = 30
DEFAULT_HISTORY_DAYS = 60
DEFAULT_VARIANCE_THRESHOLD = 20.0


class SyncState(Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


@dataclass
class SyncRun:
    """State of one tenant sync request."""

    tenant: str
    state: SyncState = SyncState.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    outcomes: list[SyncOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> list[SyncOutcome]:
        return [outcome for outcome in self.outcomes if outcome.succeeded]

    @property
    def failed(self) -> list[SyncOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.succeeded]

    def summary(self) -> dict[str, Any]:
        return {
            "tenant": self.tenant,
            "state": self.state.value,
            "accounts": len(self.outcomes),
            "succeeded": len(self.succeeded),
            "failed": [
                {
                    "account_id": outcome.account_id,
                    "error_kind": outcome.error_kind.value if outcome.error_kind else None,
                }
                for outcome in self.failed
            ],
        }


class SyncOrchestrator:
    """Runs tenant and account syncs end to end."""

    def __init__(
        self,
        account_directory: AccountDirectory,
        credential_store: CredentialStore,
        persistence: PersistenceSink,
        notifier: NotificationSink | None = None,
        *,
        cache: ResponseCache | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        factory: Any = ProviderFactory,
        normalizer: CostDataNormalizer | None = None,
        enhancer: ForecastEnhancer | None = None,
        baseline_engine: AnomalyBaselineEngine | None = None,
        policy: RetryPolicy | None = None,
        config: dict[str, Any] | None = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Args:
            account_directory: Source of the tenant's configured accounts
            credential_store: Source of decrypted credentials per account
            persistence: Idempotent sink for snapshots, daily points and baselines
            notifier: Optional sink for sync, anomaly and warning notifications
            cache: Raw response cache shared across syncs
            breakers: Circuit breaker registry shared across syncs
            factory: Object with ``create_provider(name, config, executor)``
            config: Plain dict with ``sync``, ``anomaly``, ``normalizer``,
                ``forecast`` and ``providers`` sections
            clock: Returns the current time; its date is the sync's as-of date
        """
        self.config = config or {}
        sync_config = self.config.get("sync", {}) or {}

        self.account_directory = account_directory
        self.credential_store = credential_store
        self.persistence = persistence
        self.notifier = notifier
        self.cache = cache or ResponseCache()
        self.breakers = breakers or CircuitBreakerRegistry()
        self.factory = factory
        self.normalizer = normalizer or CostDataNormalizer(
            (self.config.get("normalizer", {}) or {}).get("denylist")
        )
        self.enhancer = enhancer or ForecastEnhancer.from_config(self.config.get("forecast"))
        self.baseline_engine = baseline_engine or AnomalyBaselineEngine.from_config(self.config.get("anomaly"))
        self.policy = policy or RetryPolicy.from_config(
            ((self.config.get("resilience", {}) or {}).get("retry"))
        )
        self._clock = clock
        self._sleep = sleep

        self.max_workers = int(sync_config.get("max_workers", DEFAULT_MAX_WORKERS))
        self.account_timeout = float(sync_config.get("account_timeout", DEFAULT_ACCOUNT_TIMEOUT))
        self.lookback_days = int(sync_config.get("lookback_days", DEFAULT_LOOKBACK_DAYS))
        self.history_days = int(sync_config.get("history_days", DEFAULT_HISTORY_DAYS))
        self.variance_threshold = float(
            (self.config.get("anomaly", {}) or {}).get("variance_threshold", DEFAULT_VARIANCE_THRESHOLD)
        )

    def date_range(self, as_of: date) -> tuple[date, date]:
        """Default sync range: the lookback window, extended to the start of the month."""
        start = min(as_of - timedelta(days=self.lookback_days), as_of.replace(day=1))
        return start, as_of

    async def run_tenant_sync(
        self, tenant: str, account_ids: list[str] | None = None, force_refresh: bool = False
    ) -> list[SyncOutcome]:
        """Sync the tenant's accounts and return one outcome per account, in account order."""
        run = await self.sync_tenant(tenant, account_ids, force_refresh)
        return run.outcomes

    async def run_account_sync(self, tenant: str, account_id: str, force_refresh: bool = False) -> SyncOutcome:
        run = await self.sync_tenant(tenant, [account_id], force_refresh)
        return run.outcomes[0]

    async def sync_tenant(
        self, tenant: str, account_ids: list[str] | None = None, force_refresh: bool = False
    ) -> SyncRun:
        """
        Run one sync request for a tenant.

        Args:
            tenant: Tenant identifier
            account_ids: Accounts to sync; all active accounts when omitted
            force_refresh: Skip cache reads (responses are still written through)

        Returns:
            SyncRun in COMPLETED state holding every account's outcome
        """
        run = SyncRun(tenant=tenant)
        run.state = SyncState.IN_PROGRESS
        run.started_at = self._clock()
        as_of = run.started_at.date()
        logger.info(f"Starting sync for tenant {tenant} (as of {as_of}, force_refresh={force_refresh})")

        try:
            self.cache.invalidate_tenant(tenant)
            selected = await self._select_accounts(tenant, account_ids)

            semaphore = asyncio.Semaphore(self.max_workers)
            run.outcomes = list(
                await asyncio.gather(
                    *[
                        self._run_account(semaphore, tenant, account_id, ref, force_refresh, as_of)
                        for account_id, ref in selected
                    ]
                )
            )
        except Exception as e:
            logger.error(f"Sync for tenant {tenant} could not list accounts: {e}")
            kind = error_kind_for(e)
            run.outcomes = [
                SyncOutcome.failure(account_id, "", kind, f"Account lookup failed: {e}")
                for account_id in account_ids or []
            ]
        finally:
            run.state = SyncState.COMPLETED
            run.finished_at = self._clock()

        logger.info(
            f"Sync for tenant {tenant} completed: {len(run.succeeded)} succeeded, {len(run.failed)} failed"
        )
        await self._notify(Notification(tenant=tenant, type=NotificationType.SYNC, payload=run.summary()))
        return run

    async def fetch_service_detail(
        self,
        tenant: str,
        account_id: str,
        service_name: str,
        start_date: date | None = None,
        end_date: date | None = None,
        force_refresh: bool = False,
    ) -> ProviderRawDetail:
        """
        Fetch (or serve from cache) the breakdown of one service of an account.

        Raises:
            InvalidRequestError: If the account is unknown
            CloudProviderError: If the provider call fails
        """
        refs = {ref.account_id: ref for ref in await self.account_directory.list_accounts(tenant)}
        ref = refs.get(account_id)
        if ref is None:
            raise InvalidRequestError(f"Unknown account {account_id} for tenant {tenant}")

        if start_date is None or end_date is None:
            start_date, end_date = self.date_range(self._clock().date())

        adapter = self._adapter(tenant, ref)
        key = CacheKey(tenant, adapter.provider_name, account_id, start_date, end_date, detail=service_name)
        if not force_refresh:
            cached = self.cache.get(key)
            if cached is not None:
                return ProviderRawDetail.model_validate(cached)

        credentials = await self.credential_store.get_decrypted_credentials(tenant, account_id)
        detail = await adapter.fetch_service_detail(credentials, service_name, start_date, end_date)
        self.cache.put(key, detail.model_dump(mode="json"))
        return detail

    async def _select_accounts(
        self, tenant: str, account_ids: list[str] | None
    ) -> list[tuple[str, AccountRef | None]]:
        accounts = await self.account_directory.list_accounts(tenant)
        if account_ids is None:
            active = [(ref.account_id, ref) for ref in accounts if ref.is_active]
            skipped = len(accounts) - len(active)
            if skipped:
                logger.info(f"Skipping {skipped} inactive accounts for tenant {tenant}")
            return active

        by_id = {ref.account_id: ref for ref in accounts}
        return [(account_id, by_id.get(account_id)) for account_id in account_ids]

    async def _run_account(
        self,
        semaphore: asyncio.Semaphore,
        tenant: str,
        account_id: str,
        ref: AccountRef | None,
        force_refresh: bool,
        as_of: date,
    ) -> SyncOutcome:
        if ref is None:
            logger.error(f"Account {account_id} not configured for tenant {tenant}")
            return SyncOutcome.failure(
                account_id, "", ErrorKind.INVALID_REQUEST, f"Account {account_id} is not configured"
            )

        async with semaphore:
            try:
                return await asyncio.wait_for(
                    self._sync_account(tenant, ref, force_refresh, as_of), timeout=self.account_timeout
                )
            except asyncio.TimeoutError:
                message = f"Account sync exceeded {self.account_timeout:.0f}s"
                kind = ErrorKind.TIMEOUT
            except CloudProviderError as e:
                message = e.message
                kind = e.kind
            except Exception as e:
                logger.exception(f"Unexpected error syncing {tenant}/{account_id}")
                message = f"{type(e).__name__}: {e}"
                kind = error_kind_for(e)

        logger.error(f"Sync failed for {tenant}/{ref.provider_id}/{account_id} ({kind.value}): {message}")
        return SyncOutcome.failure(account_id, ref.provider_id, kind, message)

    async def _sync_account(
        self, tenant: str, ref: AccountRef, force_refresh: bool, as_of: date
    ) -> SyncOutcome:
        start_date, end_date = self.date_range(as_of)
        adapter = self._adapter(tenant, ref)
        provider = adapter.provider_name
        account_id = ref.account_id
        logger.info(f"Syncing {tenant}/{provider}/{account_id} for {start_date}..{end_date}")

        credentials = await self.credential_store.get_decrypted_credentials(tenant, account_id)
        history = await self.persistence.load_daily_history(
            tenant, provider, account_id, start_date, self.history_days
        )

        payload = await self._fetch_raw(tenant, adapter, account_id, credentials, start_date, end_date, force_refresh)
        snapshot, issues = self.normalizer.normalize(payload, provider, as_of=as_of, history=history)
        if has_fatal_issue(issues):
            reasons = "; ".join(issue.message for issue in issues if issue.severity == IssueSeverity.FATAL)
            raise ValidationFailedError(f"Unusable response from {provider}: {reasons}", provider=provider)

        async def backfill(first_day: date, last_day: date) -> float | None:
            return await self._backfill_month(
                tenant, adapter, account_id, credentials, first_day, last_day, force_refresh
            )

        snapshot = await self.enhancer.enhance(snapshot, history, as_of=as_of, backfill=backfill)

        await self.persistence.save_snapshot(
            tenant, provider, account_id, BillingPeriod(start_date, end_date), snapshot
        )
        await self.persistence.save_daily_points(tenant, provider, account_id, snapshot.daily_data)

        baselines = []
        try:
            service_history = await self.persistence.load_service_history(
                tenant, provider, account_id, start_date, self.baseline_engine.window_days
            )
            baselines = self.baseline_engine.update_baselines(
                tenant, provider, account_id, snapshot, service_history, as_of=as_of
            )
            await self.persistence.save_baselines(tenant, provider, account_id, baselines)
        except Exception as e:
            logger.warning(f"Baseline update failed for {tenant}/{provider}/{account_id}: {e}")

        anomalies = flag_anomalies(baselines, self.variance_threshold)
        if anomalies:
            await self._notify(
                Notification(
                    tenant=tenant,
                    type=NotificationType.ANOMALY,
                    payload={
                        "provider": provider,
                        "account_id": account_id,
                        "threshold_percent": self.variance_threshold,
                        "anomalies": [row.model_dump(mode="json") for row in anomalies],
                    },
                )
            )

        warnings = [issue for issue in issues if issue.severity == IssueSeverity.WARNING]
        if warnings:
            await self._notify(
                Notification(
                    tenant=tenant,
                    type=NotificationType.WARNING,
                    payload={
                        "provider": provider,
                        "account_id": account_id,
                        "issues": [issue.to_dict() for issue in warnings],
                    },
                )
            )

        logger.info(
            f"Synced {tenant}/{provider}/{account_id}: current month {snapshot.current_month:.2f}, "
            f"forecast {snapshot.forecast or 0:.2f} ({snapshot.forecast_confidence}% confidence)"
        )
        return SyncOutcome(
            account_id=account_id,
            provider_id=provider,
            status=SyncStatus.SUCCESS,
            snapshot=snapshot,
            baselines=baselines,
            issues=[issue.to_dict() for issue in issues],
        )

    async def _fetch_raw(
        self,
        tenant: str,
        adapter: ProviderAdapter,
        account_id: str,
        credentials: Credentials,
        start_date: date,
        end_date: date,
        force_refresh: bool,
    ) -> dict[str, Any]:
        """Serialized raw provider data, from the cache unless forced."""
        key = CacheKey(tenant, adapter.provider_name, account_id, start_date, end_date)
        if not force_refresh:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        raw = await adapter.fetch(credentials, start_date, end_date)
        payload = raw.model_dump(mode="json")
        self.cache.put(key, payload)
        return payload

    async def _backfill_month(
        self,
        tenant: str,
        adapter: ProviderAdapter,
        account_id: str,
        credentials: Credentials,
        first_day: date,
        last_day: date,
        force_refresh: bool,
    ) -> float | None:
        """Total of one past calendar month, None if the provider data is unusable."""
        payload = await self._fetch_raw(tenant, adapter, account_id, credentials, first_day, last_day, force_refresh)
        snapshot, issues = self.normalizer.normalize(payload, adapter.provider_name, as_of=last_day)
        if has_fatal_issue(issues):
            logger.warning(f"Backfill for {tenant}/{adapter.provider_name}/{account_id} returned unusable data")
            return None
        return snapshot.current_month

    def _adapter(self, tenant: str, ref: AccountRef) -> ProviderAdapter:
        provider_id = self.factory.resolve(ref.provider_id).value
        provider_config = dict((self.config.get("providers", {}) or {}).get(provider_id, {}) or {})
        provider_config.update(ref.config)
        provider_config["today"] = self._clock().date()
        executor = ResilientExecutor(
            self.breakers.get(tenant, provider_id), self.policy, provider=provider_id, sleep=self._sleep
        )
        return self.factory.create_provider(provider_id, provider_config, executor)

    async def _notify(self, notification: Notification):
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(notification)
        except Exception as e:
            logger.warning(f"Failed to send {notification.type.value} notification for {notification.tenant}: {e}")
