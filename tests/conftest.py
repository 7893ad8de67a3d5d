"""Shared fixtures: in-memory MongoDB and a fake CRM behind httpx.MockTransport."""

import os

os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key")
os.environ.setdefault("PROVIDER_RETRY_BACKOFF_SECONDS", "0")
os.environ.setdefault("LOG_FORMAT", "text")

import json
import re
from urllib.parse import parse_qsl
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient

from crm_sync.core.config import get_settings
from crm_sync.core.database import Database
from crm_sync.services import build_services


ST_CREDENTIALS = {"client_id": "st-client", "client_secret": "st-secret", "tenant_id": "12345"}
HCP_CREDENTIALS = {"api_key": "hcp-key"}

_NON_DIGITS = re.compile(r"\D")


@dataclass
class Failure:
    """Canned failure for requests matching ``predicate``."""
    predicate: Callable[[httpx.Request], bool]
    status_code: int = 500
    message: str = "Internal error"
    exception: Optional[Exception] = None
    remaining: Optional[int] = None
    body: Optional[str] = None


class FakeCRM:
    """ServiceTitan and Housecall Pro stand-in.

    Customers and jobs live in dicts keyed by id; every request is recorded.
    """

    def __init__(self, api_key: str = "hcp-key", client_secret: str = "st-secret"):
        self.api_key = api_key
        self.client_secret = client_secret
        self.expires_in = 3600
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.attachments: List[Dict[str, Any]] = []
        self.requests: List[httpx.Request] = []
        self.token_requests = 0
        self.valid_tokens = set()
        self.failures: List[Failure] = []
        self._next_id = 1000

    # Test helpers

    def fail(self, predicate, status_code=500, message="Internal error", times=None, exception=None, body=None):
        self.failures.append(Failure(predicate, status_code, message, exception, times, body))

    def revoke_tokens(self):
        self.valid_tokens.clear()

    def seed_customer(self, **fields) -> str:
        remote_id = self._new_id()
        self.customers[remote_id] = dict(fields)
        return remote_id

    def api_requests(self, method: Optional[str] = None, fragment: str = "") -> List[httpx.Request]:
        return [
            r for r in self.requests
            if r.url.host != "auth.servicetitan.io"
            and (method is None or r.method == method)
            and fragment in r.url.path
        ]

    # Transport

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        for failure in self.failures:
            if failure.remaining == 0 or not failure.predicate(request):
                continue
            if failure.remaining is not None:
                failure.remaining -= 1
            if failure.exception is not None:
                raise failure.exception
            if failure.body is not None:
                return httpx.Response(failure.status_code, text=failure.body)
            return httpx.Response(failure.status_code, json={"message": failure.message})

        if request.url.host == "auth.servicetitan.io":
            return self._token(request)
        if request.url.host == "api.servicetitan.io":
            return self._servicetitan(request)
        if request.url.host == "api.housecallpro.com":
            return self._housecallpro(request)
        return httpx.Response(404, json={"message": "Unknown host"})

    def _new_id(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    def _token(self, request: httpx.Request) -> httpx.Response:
        self.token_requests += 1
        form = dict(parse_qsl(request.content.decode()))
        if form.get("client_secret") != self.client_secret:
            return httpx.Response(401, json={"error": "invalid_client"})
        token = f"token-{self.token_requests}"
        self.valid_tokens.add(token)
        return httpx.Response(
            200,
            json={"access_token": token, "token_type": "bearer", "expires_in": self.expires_in},
        )

    def _servicetitan(self, request: httpx.Request) -> httpx.Response:
        authorization = request.headers.get("Authorization", "")
        if authorization.removeprefix("Bearer ") not in self.valid_tokens:
            return httpx.Response(401, json={"message": "Unauthorized"})
        path = re.sub(r"^/(\w+)/v2/tenant/\d+", r"/\1", request.url.path)
        return self._route(request, path, "data", {"email": "email", "phone": "phoneNumber"})

    def _housecallpro(self, request: httpx.Request) -> httpx.Response:
        if request.headers.get("Authorization") != f"Bearer {self.api_key}":
            return httpx.Response(401, json={"message": "Invalid API key"})
        path = request.url.path.removeprefix("/v1")
        return self._route(request, path, "customers", {"email": "email", "phone": "mobile_number"})

    def _route(self, request, path, list_key, fields) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        method = request.method

        if path.endswith("/technicians"):
            return httpx.Response(200, json={"data": []})

        match = re.fullmatch(r"/(?:crm/)?customers(?:/(\w+))?", path)
        if match:
            remote_id = match.group(1)
            if method == "GET" and remote_id is None:
                return httpx.Response(200, json={list_key: self._search(request.url.params, fields)})
            if method == "POST":
                remote_id = self._new_id()
                self.customers[remote_id] = body
                return httpx.Response(200, json={"id": int(remote_id)})
            if method == "PUT" and remote_id in self.customers:
                self.customers[remote_id] = body
                return httpx.Response(200, json={"id": int(remote_id)})
            return httpx.Response(404, json={"message": "Customer not found"})

        match = re.fullmatch(r"/(?:forms/)?jobs/(\w+)/attachments", path)
        if match and method == "POST":
            self.attachments.append({"job_id": match.group(1), **body})
            return httpx.Response(200, json={"id": self._new_id()})

        match = re.fullmatch(r"/(?:jpm/)?jobs(?:/(\w+))?", path)
        if match:
            remote_id = match.group(1)
            if method == "POST":
                remote_id = self._new_id()
                self.jobs[remote_id] = body
                return httpx.Response(200, json={"id": remote_id})
            if method == "PUT" and remote_id in self.jobs:
                self.jobs[remote_id] = body
                return httpx.Response(200, json={"id": remote_id})
            return httpx.Response(404, json={"message": "Job not found"})

        return httpx.Response(404, json={"message": f"No route for {method} {path}"})

    def _search(self, params, fields) -> List[Dict[str, Any]]:
        results = []
        for remote_id, customer in self.customers.items():
            if "email" in params:
                stored, wanted = customer.get(fields["email"]), params["email"]
                hit = bool(stored) and stored.lower() == wanted.lower()
            elif "phone" in params:
                stored, wanted = customer.get(fields["phone"]), params["phone"]
                hit = bool(stored) and _NON_DIGITS.sub("", stored) == _NON_DIGITS.sub("", wanted)
            elif "name" in params:
                stored = customer.get("name") or " ".join(
                    p for p in [customer.get("first_name"), customer.get("last_name")] if p
                )
                hit = bool(stored) and params["name"].lower() in stored.lower()
            else:
                hit = True
            if hit:
                results.append({"id": int(remote_id), **customer})
        return results


def make_check_in(index: int, company_id: str = "company-1", **overrides) -> Dict[str, Any]:
    """A stored check-in document."""
    doc = {
        "id": f"ci-{index}",
        "company_id": company_id,
        "technician_id": "tech-1",
        "customer": {
            "name": f"Customer {index}",
            "email": f"customer{index}@example.com",
            "phone": f"555-010-{index:04d}",
        },
        "job_type": "Service",
        "notes": "Replaced filter",
        "work_performed": "Filter replacement",
        "location": {"address": "1 Main St", "city": "Austin", "state": "TX", "zip_code": "78701"},
        "photos": [],
        "created_at": datetime(2024, 1, 1) + timedelta(minutes=index),
        "metadata": {},
    }
    doc.update(overrides)
    return doc


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def crm():
    return FakeCRM()


@pytest_asyncio.fixture
async def db():
    database = Database(AsyncMongoMockClient()["crm_sync_test"])
    await database.ensure_indexes()
    return database


@pytest.fixture
def services(db, crm, settings):
    return build_services(db, settings, transport=crm.transport)


@pytest.fixture
def seed_check_ins(db):
    async def seed(*docs):
        await db.get_collection("check_ins").insert_many([dict(doc) for doc in docs])
    return seed
