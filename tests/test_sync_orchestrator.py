"""Tests for sync runs against the fake CRM."""

import json

import httpx
import pytest
from unittest.mock import AsyncMock, patch

from crm_sync.core.exceptions import ConflictError, NotConfiguredError, UnsupportedProviderError
from crm_sync.models import LocalEntityType
from crm_sync.services import build_services

from conftest import ST_CREDENTIALS, HCP_CREDENTIALS, make_check_in

COMPANY = "company-1"


def posts_to_jobs(request):
    return request.method == "POST" and request.url.path.endswith("/jobs")


async def run_sync(services, provider="servicetitan"):
    run = await services.orchestrator.trigger(COMPANY, provider)
    return await services.orchestrator.wait(run.id)


@pytest.fixture
def configure(services):
    async def configure(provider="servicetitan", credentials=None, **sync_settings):
        if credentials is None:
            credentials = ST_CREDENTIALS if provider == "servicetitan" else HCP_CREDENTIALS
        await services.vault.configure(COMPANY, provider, credentials)
        if sync_settings:
            await services.configuration.update(COMPANY, provider, sync_settings)
    return configure


class TestSyncRun:
    """End-to-end runs."""

    @pytest.mark.asyncio
    async def test_check_in_creates_customer_and_job(self, services, crm, configure, seed_check_ins):
        await configure()
        await seed_check_ins(make_check_in(
            1,
            customer={"customer_id": "abc123", "name": "Jane Doe", "email": "jane@x.com"},
        ))

        run = await run_sync(services)

        assert run.status == "success"
        assert run.state == "completed"
        assert run.items_processed == 1
        assert run.items_skipped == 0

        assert len(crm.customers) == 1
        customer_id, customer = next(iter(crm.customers.items()))
        assert customer["email"] == "jane@x.com"
        assert len(crm.jobs) == 1
        job_id, job = next(iter(crm.jobs.items()))
        assert job["customerId"] == customer_id

        customer_mapping = await services.mappings.get(COMPANY, "servicetitan", LocalEntityType.CUSTOMER, "abc123")
        job_mapping = await services.mappings.get(COMPANY, "servicetitan", LocalEntityType.CHECKIN, "ci-1")
        assert customer_mapping.remote_id == customer_id
        assert job_mapping.remote_id == job_id

        state = await services.vault.get_record(COMPANY, "servicetitan")
        assert state.status == "active"
        assert state.last_synced_at is not None
        assert [r.id for r in await services.ledger.list(COMPANY)] == [run.id]
        assert not services.orchestrator.is_running(COMPANY, "servicetitan")

    @pytest.mark.asyncio
    async def test_api_key_provider_end_to_end(self, services, crm, configure, seed_check_ins):
        crm.api_key = "abc123"
        await configure("housecallpro", credentials={"api_key": "abc123"})
        assert (await services.integrations.test_connection(COMPANY, "housecallpro")).ok

        await seed_check_ins(make_check_in(1, customer={"name": "Jane Doe", "email": "jane@x.com"}))

        run = await run_sync(services, "housecallpro")

        assert run.status == "success"
        assert run.items_processed == 1
        assert run.error_count == 0
        customer_mapping = await services.mappings.get(
            COMPANY, "housecallpro", LocalEntityType.CUSTOMER, "email:jane@x.com"
        )
        job_mapping = await services.mappings.get(COMPANY, "housecallpro", LocalEntityType.CHECKIN, "ci-1")
        assert customer_mapping is not None
        assert job_mapping is not None
        assert await services.mappings.count(COMPANY, "housecallpro") == 2

    @pytest.mark.asyncio
    async def test_second_run_creates_nothing(self, services, crm, configure, seed_check_ins):
        await configure()
        await seed_check_ins(make_check_in(1), make_check_in(2))

        first = await run_sync(services)
        posts_after_first = len(crm.api_requests("POST"))
        second = await run_sync(services)

        assert first.items_processed == 2
        assert second.items_processed == 0
        assert second.status == "success"
        assert len(crm.api_requests("POST")) == posts_after_first
        assert len(crm.jobs) == 2
        assert await services.mappings.count(COMPANY, "servicetitan") == 4

    @pytest.mark.asyncio
    async def test_partial_run_records_each_failure(self, services, crm, configure, seed_check_ins):
        await configure()
        broken = {3, 5, 8}
        await seed_check_ins(*[
            make_check_in(i, job_type="Broken" if i in broken else "Service")
            for i in range(1, 11)
        ])
        crm.fail(
            lambda r: posts_to_jobs(r) and json.loads(r.content).get("jobType") == "Broken",
            status_code=422,
            message="Job type is not configured",
        )

        run = await run_sync(services)

        assert run.status == "partial"
        assert run.items_processed == 10
        assert run.error_count == 3
        assert sorted(e.item_id for e in run.errors) == ["ci-3", "ci-5", "ci-8"]
        assert all("Job type is not configured" in e.message for e in run.errors)
        assert len(crm.jobs) == 7

        # Failed check-ins stay eligible
        crm.failures.clear()
        retry = await run_sync(services)
        assert retry.items_processed == 3
        assert retry.status == "success"
        assert len(crm.jobs) == 10
        assert len(crm.customers) == 10

    @pytest.mark.asyncio
    async def test_every_item_failing_is_failed(self, services, crm, configure, seed_check_ins):
        await configure()
        await seed_check_ins(make_check_in(1), make_check_in(2))
        crm.fail(posts_to_jobs, status_code=400, message="Bad job")

        run = await run_sync(services)

        assert run.status == "failed"
        assert run.error_count == 2
        state = await services.vault.get_record(COMPANY, "servicetitan")
        assert state.status == "error"

    @pytest.mark.asyncio
    async def test_transient_create_is_retried_once(self, services, crm, configure, seed_check_ins):
        await configure()
        await seed_check_ins(make_check_in(1))
        crm.fail(posts_to_jobs, status_code=503, times=1)

        run = await run_sync(services)

        assert run.status == "success"
        assert len(crm.api_requests("POST", "/jobs")) == 2
        assert len(crm.jobs) == 1

    @pytest.mark.parametrize("failure, reason", [
        ({"status_code": 503, "message": "Service unavailable"}, "Service unavailable"),
        ({"exception": httpx.ReadTimeout("read timed out")}, "timed out"),
    ])
    @pytest.mark.asyncio
    async def test_exhausted_transient_failures_are_item_errors(
        self, services, crm, settings, configure, seed_check_ins, failure, reason
    ):
        await configure()
        broken = {3, 5, 8}
        await seed_check_ins(*[
            make_check_in(i, job_type="Broken" if i in broken else "Service")
            for i in range(1, 11)
        ])

        def broken_job(request):
            return posts_to_jobs(request) and json.loads(request.content).get("jobType") == "Broken"

        crm.fail(broken_job, **failure)

        run = await run_sync(services)

        assert run.status == "partial"
        assert run.items_processed == 10
        assert run.error_count == 3
        assert sorted(e.item_id for e in run.errors) == ["ci-3", "ci-5", "ci-8"]
        assert all(reason in e.message for e in run.errors)
        attempts = [r for r in crm.api_requests("POST", "/jobs") if broken_job(r)]
        assert len(attempts) == len(broken) * settings.provider_max_attempts
        assert len(crm.jobs) == 7

    @pytest.mark.asyncio
    async def test_exhausted_search_retries_are_item_errors(self, services, crm, settings, configure, seed_check_ins):
        await configure()
        await seed_check_ins(make_check_in(1), make_check_in(2))

        def broken_search(request):
            return request.method == "GET" and request.url.params.get("email") == "customer1@example.com"

        crm.fail(broken_search, status_code=503, message="Service unavailable")

        run = await run_sync(services)

        assert run.status == "partial"
        assert [e.item_id for e in run.errors] == ["ci-1"]
        assert len([r for r in crm.api_requests("GET") if broken_search(r)]) == settings.provider_max_attempts
        assert len(crm.jobs) == 1

    @pytest.mark.asyncio
    async def test_unreadable_provider_response_fails_one_item(self, services, crm, configure, seed_check_ins):
        await configure()
        await seed_check_ins(make_check_in(1), make_check_in(2))
        crm.fail(
            lambda r: r.method == "GET" and r.url.params.get("email") == "customer1@example.com",
            status_code=200,
            body="<html>Bad gateway</html>",
        )

        run = await run_sync(services)

        assert run.status == "partial"
        assert run.items_processed == 2
        assert [e.item_id for e in run.errors] == ["ci-1"]
        assert "unreadable response" in run.errors[0].message
        assert len(crm.jobs) == 1

    @pytest.mark.asyncio
    async def test_only_own_company_check_ins(self, services, crm, configure, seed_check_ins):
        await configure()
        await seed_check_ins(make_check_in(1), make_check_in(2, company_id="company-2"))

        run = await run_sync(services)

        assert run.items_processed == 1
        assert len(crm.jobs) == 1


class TestRunLifecycle:
    """Locking, preflight and cancellation."""

    @pytest.mark.asyncio
    async def test_concurrent_trigger_conflicts(self, services, configure, seed_check_ins):
        await configure()
        await seed_check_ins(make_check_in(1))

        run = await services.orchestrator.trigger(COMPANY, "servicetitan")
        with pytest.raises(ConflictError) as exc_info:
            await services.orchestrator.trigger(COMPANY, "servicetitan")
        assert exc_info.value.run_id == run.id

        await services.orchestrator.wait(run.id)
        again = await services.orchestrator.trigger(COMPANY, "servicetitan")
        await services.orchestrator.wait(again.id)

        assert len(await services.ledger.list(COMPANY)) == 2

    @pytest.mark.asyncio
    async def test_providers_run_independently(self, services, configure):
        await configure("servicetitan")
        await configure("housecallpro")

        first = await services.orchestrator.trigger(COMPANY, "servicetitan")
        second = await services.orchestrator.trigger(COMPANY, "housecallpro")
        await services.orchestrator.drain()

        assert {r.id for r in await services.ledger.list(COMPANY)} == {first.id, second.id}

    @pytest.mark.asyncio
    async def test_requires_configuration(self, services):
        with pytest.raises(NotConfiguredError):
            await services.orchestrator.trigger(COMPANY, "servicetitan")
        with pytest.raises(UnsupportedProviderError):
            await services.orchestrator.trigger(COMPANY, "jobber")

    @pytest.mark.asyncio
    async def test_preflight_failure(self, services, crm, configure, seed_check_ins):
        await configure("housecallpro", credentials={"api_key": "revoked"})
        await seed_check_ins(make_check_in(1))

        run = await run_sync(services, "housecallpro")

        assert run.status == "failed"
        assert run.preflight_failed is True
        assert run.items_processed == 0
        assert run.errors[0].item_id is None
        assert run.errors[0].message.startswith("Connection Failed")
        assert crm.api_requests("POST") == []
        state = await services.vault.get_record(COMPANY, "housecallpro")
        assert state.status == "error"

    @pytest.mark.asyncio
    async def test_cancel_before_first_item(self, services, crm, configure, seed_check_ins):
        await configure()
        await seed_check_ins(make_check_in(1), make_check_in(2))

        run = await services.orchestrator.trigger(COMPANY, "servicetitan")
        assert services.orchestrator.cancel(COMPANY, "servicetitan") == run.id
        finished = await services.orchestrator.wait(run.id)

        assert finished.cancelled is True
        assert finished.items_processed == 0
        assert crm.jobs == {}
        assert services.orchestrator.cancel(COMPANY, "servicetitan") is None

    @pytest.mark.asyncio
    async def test_unexpected_error_aborts_run(self, services, configure, seed_check_ins):
        await configure()
        await seed_check_ins(make_check_in(1), make_check_in(2))

        with patch.object(services.orchestrator, "_sync_item", AsyncMock(side_effect=RuntimeError("db down"))):
            run = await run_sync(services)

        assert run.status == "failed"
        assert run.errors[-1].message == "Sync aborted: db down"
        assert not services.orchestrator.is_running(COMPANY, "servicetitan")
        assert (await services.ledger.get(COMPANY, run.id)).status == "failed"

    @pytest.mark.asyncio
    async def test_check_in_without_customer_is_an_item_error(self, services, crm, configure, seed_check_ins):
        await configure()
        await seed_check_ins(make_check_in(1), make_check_in(2, customer={}))

        run = await run_sync(services)

        assert run.status == "partial"
        assert run.errors[0].item_id == "ci-2"
        assert "no customer" in run.errors[0].message
        assert len(crm.jobs) == 1


class TestSyncSettingsBehaviour:
    """How sync settings shape a run."""

    @pytest.mark.asyncio
    async def test_existing_customer_is_matched_and_updated(self, services, crm, configure, seed_check_ins):
        await configure()
        remote_id = crm.seed_customer(name="Customer 1", email="CUSTOMER1@example.com")
        await seed_check_ins(make_check_in(1))

        run = await run_sync(services)

        assert run.status == "success"
        assert len(crm.customers) == 1
        assert len(crm.api_requests("PUT", f"/customers/{remote_id}")) == 1
        assert next(iter(crm.jobs.values()))["customerId"] == remote_id

    @pytest.mark.asyncio
    async def test_existing_customer_left_alone(self, services, crm, configure, seed_check_ins):
        await configure(update_existing_customers=False)
        remote_id = crm.seed_customer(name="Customer 1", email="customer1@example.com")
        await seed_check_ins(make_check_in(1))

        await run_sync(services)

        assert crm.api_requests("PUT") == []
        assert next(iter(crm.jobs.values()))["customerId"] == remote_id

    @pytest.mark.asyncio
    async def test_no_match_and_no_create_skips(self, services, crm, configure, seed_check_ins):
        await configure(create_new_customers=False)
        await seed_check_ins(make_check_in(1))

        run = await run_sync(services)

        assert run.status == "success"
        assert run.items_processed == 1
        assert run.items_skipped == 1
        assert crm.customers == {}
        assert crm.jobs == {}

    @pytest.mark.asyncio
    async def test_jobs_only_uses_existing_customer(self, services, crm, configure, seed_check_ins):
        await configure(sync_customers=False)
        remote_id = crm.seed_customer(name="Someone", phoneNumber="555-010-0001")
        await seed_check_ins(make_check_in(1), make_check_in(2))

        run = await run_sync(services)

        assert run.items_processed == 2
        assert run.items_skipped == 1
        assert crm.api_requests("POST", "/customers") == []
        assert crm.api_requests("PUT", "/customers") == []
        assert [job["customerId"] for job in crm.jobs.values()] == [remote_id]

    @pytest.mark.asyncio
    async def test_customers_only(self, services, crm, configure, seed_check_ins):
        await configure(sync_check_ins_as_jobs=False)
        await seed_check_ins(make_check_in(1))

        run = await run_sync(services)

        assert run.items_skipped == 0
        assert len(crm.customers) == 1
        assert crm.jobs == {}

    @pytest.mark.asyncio
    async def test_shared_email_resolves_to_one_customer(self, services, crm, configure, seed_check_ins):
        await configure(customer_match_strategy="email")
        await seed_check_ins(
            make_check_in(1, customer={"name": "Jane Doe", "email": "jane@x.com", "phone": "555-0001"}),
            make_check_in(2, customer={"name": "J. Doe", "email": "Jane@X.com", "phone": "555-0002"}),
        )

        await run_sync(services)

        assert len(crm.customers) == 1
        customer_ids = {job["customerId"] for job in crm.jobs.values()}
        assert customer_ids == set(crm.customers)

    @pytest.mark.asyncio
    async def test_photos_attached_to_job(self, services, crm, configure, seed_check_ins):
        await configure()
        photos = [{"url": "https://cdn.example.com/1.jpg"}, {"url": "https://cdn.example.com/2.jpg"}]
        await seed_check_ins(make_check_in(1, photos=photos))

        await run_sync(services)

        job_id = next(iter(crm.jobs))
        assert [a["url"] for a in crm.attachments] == [p["url"] for p in photos]
        assert {a["job_id"] for a in crm.attachments} == {job_id}

    @pytest.mark.asyncio
    async def test_photos_disabled(self, services, crm, configure, seed_check_ins):
        await configure(sync_photos=False)
        await seed_check_ins(make_check_in(1, photos=[{"url": "https://cdn.example.com/1.jpg"}]))

        await run_sync(services)

        assert crm.attachments == []

    @pytest.mark.asyncio
    async def test_custom_fields_mapped_onto_job(self, services, crm, configure, seed_check_ins):
        await configure("housecallpro", custom_field_mapping={"po": "PO Number"})
        await seed_check_ins(make_check_in(1, metadata={"po": "PO-7", "internal": "x"}))

        await run_sync(services, "housecallpro")

        assert next(iter(crm.jobs.values()))["custom_fields"] == {"PO Number": "PO-7"}


class TestEligibility:
    """Which check-ins a run picks up."""

    @pytest.mark.asyncio
    async def test_skipped_check_ins_do_not_starve_newer_ones(self, db, crm, settings, seed_check_ins):
        services = build_services(
            db, settings.model_copy(update={"sync_batch_size": 2}), transport=crm.transport
        )
        await services.vault.configure(COMPANY, "servicetitan", ST_CREDENTIALS)
        await services.configuration.update(COMPANY, "servicetitan", {"create_new_customers": False})
        remote_id = crm.seed_customer(name="Customer 5", email="customer5@example.com")
        await seed_check_ins(*[make_check_in(i) for i in range(1, 6)])

        first = await run_sync(services)
        second = await run_sync(services)

        assert first.items_processed == 5
        assert first.items_skipped == 4
        assert [job["customerId"] for job in crm.jobs.values()] == [remote_id]
        assert await services.mappings.get(COMPANY, "servicetitan", LocalEntityType.CHECKIN, "ci-5")
        assert second.items_processed == 4
        assert second.items_skipped == 4
        assert len(crm.jobs) == 1

    @pytest.mark.asyncio
    async def test_numeric_check_in_ids(self, services, crm, configure, seed_check_ins):
        await configure()
        await seed_check_ins(make_check_in(1, id=7))

        first = await run_sync(services)
        second = await run_sync(services)

        assert first.items_processed == 1
        assert second.items_processed == 0
        assert len(crm.jobs) == 1
        assert crm.api_requests("PUT", "/jobs") == []
        assert await services.mappings.get(COMPANY, "servicetitan", LocalEntityType.CHECKIN, "7")

        assert await services.orchestrator.requeue(COMPANY, "servicetitan", ["7"]) == 1
        assert (await run_sync(services)).items_processed == 1
        assert len(crm.jobs) == 1


class TestRequeue:
    """Re-pushing already synced check-ins."""

    @pytest.mark.asyncio
    async def test_requeued_check_in_updates_existing_job(self, services, crm, configure, seed_check_ins):
        await configure()
        await seed_check_ins(make_check_in(1), make_check_in(2))
        await run_sync(services)
        job_mapping = await services.mappings.get(COMPANY, "servicetitan", LocalEntityType.CHECKIN, "ci-1")

        assert await services.orchestrator.requeue(COMPANY, "servicetitan", ["ci-1", "ci-unknown"]) == 1
        run = await run_sync(services)

        assert run.items_processed == 1
        assert len(crm.jobs) == 2
        assert len(crm.api_requests("PUT", f"/jobs/{job_mapping.remote_id}")) == 1
        mapping = await services.mappings.get(COMPANY, "servicetitan", LocalEntityType.CHECKIN, "ci-1")
        assert mapping.requeued is False
        assert mapping.remote_id == job_mapping.remote_id

    @pytest.mark.asyncio
    async def test_mappings_survive_removal_unless_purged(self, services, configure, seed_check_ins):
        await configure()
        await seed_check_ins(make_check_in(1))
        await run_sync(services)

        await services.integrations.remove(COMPANY, "servicetitan")
        assert await services.mappings.count(COMPANY, "servicetitan") == 2

        await services.integrations.remove(COMPANY, "servicetitan", purge_mappings=True)
        assert await services.mappings.count(COMPANY, "servicetitan") == 0

    @pytest.mark.asyncio
    async def test_removed_credentials_are_not_configured(self, services, configure):
        await configure("housecallpro")
        assert await services.integrations.remove(COMPANY, "housecallpro")

        with pytest.raises(NotConfiguredError):
            await services.integrations.test_connection(COMPANY, "housecallpro")
        with pytest.raises(NotConfiguredError):
            await services.orchestrator.trigger(COMPANY, "housecallpro")
