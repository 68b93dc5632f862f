import dataclasses
import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db
from main import app
from routers import rate_limit
from routers.dependencies import get_billing_client, get_generator, get_identity_verifier
from services.entitlement_types import CheckoutSession, PlanTier, UserAccount
from services.entitlements import EntitlementLedger
from services.identity import IdentityVerificationError, VerifiedIdentity


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


class InMemoryAccountStore:
    """Dict-backed stand-in for SqlAccountStore."""

    def __init__(self, *accounts: UserAccount):
        self.accounts: Dict[str, UserAccount] = {account.id: account for account in accounts}
        self.writes = 0

    async def get(self, user_id):
        return self.accounts.get(user_id)

    async def find_by_billing_customer_ref(self, billing_customer_ref):
        for account in self.accounts.values():
            if account.billing_customer_ref == billing_customer_ref:
                return account
        return None

    async def create_if_missing(self, user_id, *, starting_credits, email=None, display_name=None):
        if user_id in self.accounts:
            return self.accounts[user_id], False
        self.writes += 1
        self.accounts[user_id] = UserAccount(
            id=user_id,
            plan_tier=PlanTier.FREE,
            credit_balance=starting_credits,
            email=email,
            display_name=display_name,
        )
        return self.accounts[user_id], True

    async def decrement_credit(self, user_id):
        account = self.accounts.get(user_id)
        if account is None or account.plan_tier is not PlanTier.FREE or account.credit_balance <= 0:
            return False
        self.writes += 1
        self.accounts[user_id] = dataclasses.replace(account, credit_balance=account.credit_balance - 1)
        return True

    async def assign_plan_tier(
        self,
        user_id,
        plan_tier,
        *,
        refill_credits=None,
        billing_customer_ref=None,
        subscription_status=None,
        subscription_period_end=None,
    ):
        account = self.accounts.get(user_id)
        if account is None:
            return False
        changes: Dict[str, Any] = {"plan_tier": plan_tier}
        if plan_tier is PlanTier.FREE and refill_credits is not None and account.plan_tier is PlanTier.PRO:
            changes["credit_balance"] = refill_credits
        if billing_customer_ref:
            changes["billing_customer_ref"] = billing_customer_ref
        if subscription_status:
            changes["subscription_status"] = subscription_status
        if subscription_period_end is not None:
            changes["subscription_period_end"] = subscription_period_end
        self.writes += 1
        self.accounts[user_id] = dataclasses.replace(account, **changes)
        return True

    async def set_billing_customer_ref(self, user_id, billing_customer_ref):
        account = self.accounts.get(user_id)
        if account is None:
            return False
        self.writes += 1
        self.accounts[user_id] = dataclasses.replace(account, billing_customer_ref=billing_customer_ref)
        return True


class FakeBillingClient:
    def __init__(self):
        self.customers: List[Dict[str, Any]] = []
        self.checkouts: List[Dict[str, Any]] = []
        self.portals: List[Dict[str, Any]] = []

    async def create_customer(self, *, user_id, email=None):
        self.customers.append({"user_id": user_id, "email": email})
        return f"cus_{user_id}"

    async def create_checkout_session(self, *, customer_ref, user_id, success_url, cancel_url):
        self.checkouts.append(
            {
                "customer_ref": customer_ref,
                "user_id": user_id,
                "success_url": success_url,
                "cancel_url": cancel_url,
            }
        )
        session_id = f"cs_test_{len(self.checkouts)}"
        return CheckoutSession(session_id=session_id, url=f"https://checkout.stripe.test/{session_id}")

    async def create_portal_session(self, *, customer_ref, return_url):
        self.portals.append({"customer_ref": customer_ref, "return_url": return_url})
        return f"https://billing.stripe.test/portal/{customer_ref}"


class FakeGenerator:
    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.error: Optional[Exception] = None

    async def generate(self, kind, payload):
        self.calls.append({"kind": kind, "payload": payload})
        if self.error is not None:
            raise self.error
        return {"kind": kind.value, "text": f"{payload.get('pet_name')} goes on an adventure."}


class FakeIdentityVerifier:
    """Accepts only ID tokens it has issued itself."""

    def __init__(self):
        self.identities: Dict[str, VerifiedIdentity] = {}

    def issue(self, user_id: str, email: Optional[str] = None) -> str:
        token = f"id-token-{len(self.identities) + 1}"
        self.identities[token] = VerifiedIdentity(user_id=user_id, email=email)
        return token

    async def verify(self, id_token):
        identity = self.identities.get(id_token)
        if identity is None:
            raise IdentityVerificationError("ID token rejected: unknown token")
        return identity


@dataclass
class ApiHarness:
    client: AsyncClient
    session_maker: Any
    billing: FakeBillingClient = field(default_factory=FakeBillingClient)
    generator: FakeGenerator = field(default_factory=FakeGenerator)
    identity: FakeIdentityVerifier = field(default_factory=FakeIdentityVerifier)

    async def register(self, user_id: str, email: Optional[str] = None) -> Dict[str, Any]:
        id_token = self.identity.issue(user_id, email)
        response = await self.client.post("/auth/register", json={"id_token": id_token})
        assert response.status_code == 200
        payload = response.json()
        payload["headers"] = {"Authorization": f"Bearer {payload['session_token']}"}
        return payload


@pytest_asyncio.fixture
async def sqlite_session_maker(tmp_path):
    db_path = tmp_path / "pet_persona.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", connect_args={"timeout": 30})
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield session_maker
    await engine.dispose()


@pytest_asyncio.fixture
async def api(sqlite_session_maker):
    billing = FakeBillingClient()
    generator = FakeGenerator()
    identity = FakeIdentityVerifier()

    async def override_get_db():
        async with sqlite_session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_billing_client] = lambda: billing
    app.dependency_overrides[get_generator] = lambda: generator
    app.dependency_overrides[get_identity_verifier] = lambda: identity
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield ApiHarness(
            client=client,
            session_maker=sqlite_session_maker,
            billing=billing,
            generator=generator,
            identity=identity,
        )

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_billing_client, None)
    app.dependency_overrides.pop(get_generator, None)
    app.dependency_overrides.pop(get_identity_verifier, None)


@pytest.fixture
def make_ledger():
    """Build an EntitlementLedger over in-memory collaborators."""

    def _make(*accounts: UserAccount) -> EntitlementLedger:
        return EntitlementLedger(InMemoryAccountStore(*accounts), FakeBillingClient())

    return _make


@pytest.fixture
def signed_webhook(monkeypatch):
    """Configure a webhook secret and sign Stripe-style payloads with it."""
    secret = "whsec_router_test"
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", secret)

    def _sign(event: Dict[str, Any]):
        payload = json.dumps(event)
        timestamp = int(time.time())
        digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
        headers = {"stripe-signature": f"t={timestamp},v1={digest}", "content-type": "application/json"}
        return payload, headers

    return _sign
