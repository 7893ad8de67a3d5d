"""Sync orchestration: one background run per company and provider."""

from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple
import asyncio
import logging

from crm_sync.core.config import Settings, get_settings
from crm_sync.core.exceptions import ConflictError, CredentialsUnreadableError, NotConfiguredError
from crm_sync.integrations.base import BaseProviderAdapter, IntegrationError, InvalidItemError
from crm_sync.integrations.registry import AdapterFactory, ProviderRegistry
from crm_sync.models import (
    CheckIn,
    IntegrationStatus,
    LocalEntityType,
    SyncRun,
    SyncRunStatus,
    SyncSettings,
)
from crm_sync.services.check_in_source import CheckInRepository
from crm_sync.services.configuration_registry import ConfigurationRegistry
from crm_sync.services.credential_vault import CredentialVault
from crm_sync.services.customer_matcher import CustomerMatcher
from crm_sync.services.remote_mapping import RemoteMappingRepository
from crm_sync.services.sync_history import SyncHistoryLedger
from crm_sync.utils.logging import ContextLogger, bind

logger = logging.getLogger(__name__)


def run_log(run: SyncRun) -> ContextLogger:
    return bind(logger, run_id=run.id, company_id=run.company_id, provider=run.provider)


class ItemOutcome(str, Enum):
    SYNCED = "synced"
    SKIPPED = "skipped"


@dataclass
class ActiveRun:
    """A run in flight and the task driving it."""
    run: SyncRun
    task: Optional[asyncio.Task] = None
    cancel_requested: bool = False


class SyncOrchestrator:
    """Drives sync runs.

    At most one run exists per (company_id, provider). Items are processed
    sequentially; a failing item is recorded on the run and the loop moves on.
    Anything that is not an IntegrationError aborts the run.
    """

    def __init__(
        self,
        vault: CredentialVault,
        configuration: ConfigurationRegistry,
        mappings: RemoteMappingRepository,
        check_ins: CheckInRepository,
        ledger: SyncHistoryLedger,
        adapter_factory: AdapterFactory,
        settings: Optional[Settings] = None,
    ):
        self.vault = vault
        self.configuration = configuration
        self.mappings = mappings
        self.check_ins = check_ins
        self.ledger = ledger
        self.adapter_factory = adapter_factory
        self.settings = settings or get_settings()
        self._active: Dict[Tuple[str, str], ActiveRun] = {}

    # Run lifecycle

    def is_running(self, company_id: str, provider: str) -> bool:
        return (company_id, provider) in self._active

    def active_runs(self) -> List[SyncRun]:
        return [active.run for active in self._active.values()]

    def get_active_run(self, company_id: str, provider: str) -> Optional[SyncRun]:
        active = self._active.get((company_id, provider))
        return active.run if active else None

    def find_active_run(self, company_id: str, run_id: str) -> Optional[SyncRun]:
        for (owner, _), active in self._active.items():
            if owner == company_id and active.run.id == run_id:
                return active.run
        return None

    async def trigger(self, company_id: str, provider: str) -> SyncRun:
        """Start a run in the background and return it immediately."""
        ProviderRegistry.require(provider)
        if not await self.vault.is_configured(company_id, provider):
            raise NotConfiguredError(provider)

        # No await between the check and the insert
        key = (company_id, provider)
        existing = self._active.get(key)
        if existing:
            raise ConflictError(provider, existing.run.id)

        run = SyncRun(company_id=company_id, provider=provider)
        run.start()
        active = ActiveRun(run=run)
        self._active[key] = active
        active.task = asyncio.create_task(self._execute(active), name=f"sync-run-{run.id}")

        run_log(run).info(f"Triggered {provider} sync for company {company_id}")
        return run

    def cancel(self, company_id: str, provider: str) -> Optional[str]:
        """Ask the active run to stop before its next item."""
        active = self._active.get((company_id, provider))
        if not active:
            return None
        active.cancel_requested = True
        run_log(active.run).info(f"Cancellation requested for sync run {active.run.id}")
        return active.run.id

    async def wait(self, run_id: str) -> Optional[SyncRun]:
        """Wait for an active run to finish. Returns None if it is not active."""
        for active in list(self._active.values()):
            if active.run.id == run_id and active.task:
                await asyncio.shield(active.task)
                return active.run
        return None

    async def drain(self) -> None:
        """Wait for every active run to finish."""
        tasks = [active.task for active in self._active.values() if active.task]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel all runs cooperatively and wait for them."""
        for active in self._active.values():
            active.cancel_requested = True
        await self.drain()

    async def requeue(self, company_id: str, provider: str, check_in_ids: List[str]) -> int:
        """Mark synced check-ins for another push on the next run."""
        ProviderRegistry.require(provider)
        return await self.mappings.requeue(company_id, provider, check_in_ids)

    # Execution

    async def _execute(self, active: ActiveRun) -> None:
        run = active.run
        log = run_log(run)
        aborted = False
        try:
            await self._run(active)
        except asyncio.CancelledError:
            aborted = True
            run.record_error(None, "Sync run was interrupted")
            raise
        except Exception as e:
            aborted = True
            run.record_error(None, f"Sync aborted: {e}")
            log.exception(f"Sync run {run.id} aborted")
        finally:
            await self._finish(active, aborted)

    async def _finish(self, active: ActiveRun, aborted: bool) -> None:
        run = active.run
        log = run_log(run)
        try:
            run.finalize(aborted=aborted)
            await self.ledger.append(run)
            failed = run.status == SyncRunStatus.FAILED
            await self.vault.record_status(
                run.company_id,
                run.provider,
                IntegrationStatus.ERROR if failed else IntegrationStatus.ACTIVE,
                message=run.errors[0].message if failed and run.errors else None,
                last_synced_at=run.finished_at,
            )
        except Exception:
            log.exception(f"Failed to record sync run {run.id}")
        finally:
            self._active.pop((run.company_id, run.provider), None)

        log.info(
            f"Sync run {run.id} finished with status {run.status}",
            extra={
                "status": run.status,
                "items_processed": run.items_processed,
                "items_skipped": run.items_skipped,
                "error_count": run.error_count,
            },
        )

    async def _run(self, active: ActiveRun) -> None:
        run = active.run
        log = run_log(run)

        try:
            credentials = await self.vault.get(run.company_id, run.provider)
        except (NotConfiguredError, CredentialsUnreadableError) as e:
            run.preflight_failed = True
            run.record_error(None, str(e))
            return
        settings = await self.configuration.get(run.company_id, run.provider)

        async with self.adapter_factory.create(run.provider, credentials) as adapter:
            connection = await adapter.test_connection()
            if not connection.ok:
                run.preflight_failed = True
                run.record_error(None, connection.detail)
                log.warning(f"Preflight failed for sync run {run.id}: {connection.detail}")
                return

            matcher = CustomerMatcher(adapter)
            async with aclosing(self._eligible_check_ins(run)) as docs:
                async for doc in docs:
                    if active.cancel_requested:
                        run.cancelled = True
                        log.info(f"Sync run {run.id} cancelled")
                        break

                    item_id = str(doc.get("id"))
                    run.items_processed += 1
                    try:
                        check_in = self.check_ins.to_model(doc)
                        outcome = await self._sync_item(run, adapter, matcher, settings, check_in)
                    except IntegrationError as e:
                        run.record_error(item_id, str(e))
                        log.warning(f"Check-in {item_id} failed: {e}", extra={"item_id": item_id})
                        continue

                    if outcome == ItemOutcome.SKIPPED:
                        run.items_skipped += 1

            log.info(f"Sync run {run.id} handled {run.items_processed} eligible check-ins")

    async def _eligible_check_ins(self, run: SyncRun) -> AsyncIterator[Dict[str, Any]]:
        """Check-ins never pushed to this provider, plus requeued ones.

        Ids are compared as strings, the form mappings are stored under.
        """
        check_ins = self.check_ins.iter_check_ins(run.company_id, self.settings.sync_batch_size)
        async with aclosing(check_ins):
            async for doc in check_ins:
                synced = await self.mappings.is_synced(
                    run.company_id, run.provider, LocalEntityType.CHECKIN, str(doc.get("id"))
                )
                if not synced:
                    yield doc

    async def _sync_item(
        self,
        run: SyncRun,
        adapter: BaseProviderAdapter,
        matcher: CustomerMatcher,
        settings: SyncSettings,
        check_in: CheckIn,
    ) -> ItemOutcome:
        did_work = False
        customer_id = None

        if settings.sync_customers:
            customer_id, did_work = await self._sync_customer(run, adapter, matcher, settings, check_in)
            if customer_id is None:
                return ItemOutcome.SKIPPED
        elif settings.sync_check_ins_as_jobs:
            customer_id = await self._find_customer(run, matcher, settings, check_in)
            if customer_id is None:
                return ItemOutcome.SKIPPED

        if settings.sync_check_ins_as_jobs:
            await self._sync_job(run, adapter, settings, check_in, customer_id)
            did_work = True

        return ItemOutcome.SYNCED if did_work else ItemOutcome.SKIPPED

    @staticmethod
    def _customer_key(check_in: CheckIn) -> str:
        key = check_in.customer.local_key()
        if not key:
            raise InvalidItemError(f"Check-in {check_in.id} has no customer id, email, phone or name")
        return key

    async def _sync_customer(
        self,
        run: SyncRun,
        adapter: BaseProviderAdapter,
        matcher: CustomerMatcher,
        settings: SyncSettings,
        check_in: CheckIn,
    ) -> Tuple[Optional[str], bool]:
        """Return the remote customer id and whether a remote write happened."""
        identity = check_in.customer
        local_key = self._customer_key(check_in)

        mapping = await self.mappings.get(run.company_id, run.provider, LocalEntityType.CUSTOMER, local_key)
        if mapping:
            if settings.update_existing_customers:
                await adapter.upsert_customer(identity, remote_id=mapping.remote_id)
                return mapping.remote_id, True
            return mapping.remote_id, False

        remote_id = await matcher.resolve(identity, settings.customer_match_strategy)
        if remote_id:
            if settings.update_existing_customers:
                await adapter.upsert_customer(identity, remote_id=remote_id)
            await self.mappings.upsert(run.company_id, run.provider, LocalEntityType.CUSTOMER, local_key, remote_id)
            return remote_id, True

        if not settings.create_new_customers:
            run_log(run).info(
                f"No {run.provider} customer matches check-in {check_in.id}; creation disabled",
                extra={"item_id": check_in.id},
            )
            return None, False

        remote_id = await self._create_with_recheck(
            adapter,
            lookup=lambda: self._mapped_remote_id(run, LocalEntityType.CUSTOMER, local_key),
            create=lambda: adapter.upsert_customer(identity),
        )
        await self.mappings.upsert(run.company_id, run.provider, LocalEntityType.CUSTOMER, local_key, remote_id)
        return remote_id, True

    async def _find_customer(
        self,
        run: SyncRun,
        matcher: CustomerMatcher,
        settings: SyncSettings,
        check_in: CheckIn,
    ) -> Optional[str]:
        """Read-only customer lookup used when customer sync is off."""
        local_key = self._customer_key(check_in)
        remote_id = await self._mapped_remote_id(run, LocalEntityType.CUSTOMER, local_key)
        if remote_id:
            return remote_id

        remote_id = await matcher.resolve(check_in.customer, settings.customer_match_strategy)
        if remote_id:
            await self.mappings.upsert(run.company_id, run.provider, LocalEntityType.CUSTOMER, local_key, remote_id)
        return remote_id

    async def _sync_job(
        self,
        run: SyncRun,
        adapter: BaseProviderAdapter,
        settings: SyncSettings,
        check_in: CheckIn,
        customer_id: str,
    ) -> str:
        custom_fields = check_in.custom_fields(settings.custom_field_mapping)

        existing = await self._mapped_remote_id(run, LocalEntityType.CHECKIN, check_in.id)
        if existing:
            remote_id = await adapter.push_check_in(
                check_in, customer_id, remote_id=existing, custom_fields=custom_fields
            )
        else:
            remote_id = await self._create_with_recheck(
                adapter,
                lookup=lambda: self._mapped_remote_id(run, LocalEntityType.CHECKIN, check_in.id),
                create=lambda: adapter.push_check_in(check_in, customer_id, custom_fields=custom_fields),
            )
        await self.mappings.upsert(run.company_id, run.provider, LocalEntityType.CHECKIN, check_in.id, remote_id)

        if settings.sync_photos and check_in.photos:
            await adapter.attach_photos(remote_id, check_in.photos)
        return remote_id

    async def _mapped_remote_id(
        self,
        run: SyncRun,
        entity_type: LocalEntityType,
        local_id: str,
    ) -> Optional[str]:
        mapping = await self.mappings.get(run.company_id, run.provider, entity_type, local_id)
        return mapping.remote_id if mapping else None

    async def _create_with_recheck(
        self,
        adapter: BaseProviderAdapter,
        lookup: Callable[[], Awaitable[Optional[str]]],
        create: Callable[[], Awaitable[str]],
    ) -> str:
        """Retry a create on transient errors, re-reading the mapping before each attempt."""
        async for attempt in adapter.retrying():
            with attempt:
                existing = await lookup()
                if existing:
                    return existing
                return await create()
