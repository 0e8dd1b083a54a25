"""
FarGuard Attester - HTTP API Tests

End-to-end through FastAPI's TestClient with injected services (fake chain,
static identity directory, in-memory store). Startup hooks are not run, so
no background sync is started.

Scenarios
  W   verified identity + Revoked(W, T, S) on chain  -> 200, signature recovers to issuer
  W2  verified identity, no event for (T, S)          -> 400 "no proof..."
  W3  not in the identity directory                   -> 403 "not a verified identity"

Profiles are also exercised through build_services with the shipped
strict / anti_farming / live_only / strict_view settings.
"""

import os
import sys
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

# ── Path setup ────────────────────────────────────────────────────────────────
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from api.main import AttesterServices, build_services, create_app
from engine.config import Settings, resolve_profile
from engine.identity import IdentityRecord, StaticIdentityResolver
from engine.orchestrator import AttestationOrchestrator
from engine.policy import EligibilityPolicy
from engine.proof import ActionProofChecker
from engine.signer import AttestationPayload, AttestationSigner, EIP712Domain
from engine.store import MemoryProofStore
from engine.sync import SyncMaintainer
from fakes import (
    REVOKE_HELPER, SPENDER, TEST_PRIVATE_KEY, TOKEN, VERIFYING_CONTRACT,
    WALLET, WALLET_2, WALLET_3, FakeChain, revoked,
)

ADMIN_KEY = "test-admin-key"


def _services(resolver=None):
    settings = Settings(
        private_key           = TEST_PRIVATE_KEY,
        verifying_contract    = VERIFYING_CONTRACT,
        revoke_helper_address = REVOKE_HELPER,
        deploy_block          = 100,
        chunk_delay_sec       = 0,
        admin_api_key         = ADMIN_KEY,
    )
    domain = EIP712Domain(settings.domain_name, settings.domain_version, settings.chain_id,
                          settings.verifying_contract)
    signer = AttestationSigner(domain, settings.private_key)
    chain  = FakeChain(head=10_000, events=[revoked(WALLET, 500), revoked(WALLET_3, 600)])
    store  = MemoryProofStore()
    if resolver is None:
        resolver = StaticIdentityResolver()
        resolver.add(IdentityRecord(4242, WALLET, username="alice"))
        resolver.add(IdentityRecord(777, WALLET_2, username="bob"))
    maintainer = SyncMaintainer(chain, store, deploy_block=100, chunk_size=5_000,
                                on_demand_chunk=10, chunk_delay_sec=0)
    checker = ActionProofChecker(chain, store, maintainer, deploy_block=100)
    orchestrator = AttestationOrchestrator(resolver, checker, signer, EligibilityPolicy(settings.policy))
    return AttesterServices(
        settings=settings, signer=signer, store=store, chain=chain, resolver=resolver,
        maintainer=maintainer, proof_checker=checker, orchestrator=orchestrator,
    )


@pytest.fixture
def services():
    return _services()


@pytest.fixture
def client(services):
    return TestClient(create_app(services))


def _claim(wallet):
    return {"wallet": wallet, "token": TOKEN, "spender": SPENDER}


class TestAttest:

    def test_verified_wallet_with_proof_gets_signature(self, client, services):
        res = client.post("/attest", json=_claim(WALLET))
        assert res.status_code == 200
        body = res.json()
        assert body["externalId"] == body["fid"] == 4242
        assert body["issuer"] == services.signer.address

        payload = AttestationPayload(
            wallet=WALLET, external_id=body["externalId"], nonce=int(body["nonce"]),
            deadline=body["deadline"], token=TOKEN, spender=SPENDER,
        )
        assert services.signer.recover(payload, body["signature"]) == body["issuer"]

    def test_verified_wallet_without_proof_is_400(self, client):
        res = client.post("/attest", json=_claim(WALLET_2))
        assert res.status_code == 400
        assert res.json()["error"].startswith("no proof")
        assert res.json()["kind"] == "proof_not_found"

    def test_unknown_wallet_is_403(self, client):
        res = client.post("/attest", json=_claim(WALLET_3))
        assert res.status_code == 403
        assert res.json()["error"] == "not a verified identity"

    def test_missing_fields_is_400(self, client):
        res = client.post("/attest", json={"wallet": WALLET})
        assert res.status_code == 400
        assert res.json()["kind"] == "invalid_input"

    def test_malformed_body_is_400(self, client):
        res = client.post("/attest", content=b"not json", headers={"content-type": "application/json"})
        assert res.status_code == 400
        assert res.json()["kind"] == "invalid_input"

    def test_provider_outage_is_503(self):
        class Down:
            async def resolve(self, address):
                from engine.errors import ResolutionUnavailable
                raise ResolutionUnavailable("identity provider unavailable: ReadTimeout")

            async def aclose(self):
                return None

        client = TestClient(create_app(_services(resolver=Down())))
        res = client.post("/attest", json=_claim(WALLET))
        assert res.status_code == 503
        assert res.json()["kind"] == "identity_provider_unavailable"

    def test_unexpected_error_does_not_leak(self, services):
        class Exploding:
            async def resolve(self, address):
                raise RuntimeError("secret internals")

        services.orchestrator.resolver = Exploding()
        client = TestClient(create_app(services), raise_server_exceptions=False)
        res = client.post("/attest", json=_claim(WALLET))
        assert res.status_code == 500
        assert "secret" not in res.text


class TestReadRoutes:

    def test_health(self, client, services):
        body = client.get("/health").json()
        assert body["ok"] is True
        assert body["issuer"] == services.signer.address
        assert body["chainId"] == 8453

    def test_info_exposes_domain_and_types(self, client):
        body = client.get("/api/v1/attester/info").json()
        assert body["domain"]["name"] == "RevokeAndClaim"
        assert body["domain"]["chainId"] == 8453
        assert [f["name"] for f in body["types"]["Attestation"]] == [
            "wallet", "fid", "nonce", "deadline", "token", "spender",
        ]
        assert body["ttl_seconds"] == 600
        assert body["proof_tiers"] == ["store", "on_demand", "live_query"]

    def test_check_wallet_lists_cached_proofs(self, client):
        client.post("/attest", json=_claim(WALLET))
        body = client.get(f"/check/{WALLET}").json()
        assert body["count"] == 1
        assert body["records"][0]["spender"] == SPENDER.lower()

    def test_check_invalid_wallet(self, client):
        assert client.get("/check/0xnope").status_code == 400


class TestSyncRoute:

    def test_requires_admin_key(self, client):
        for headers in ({}, {"X-Attester-Admin-Key": "wrong"}):
            res = client.post("/sync", headers=headers)
            assert res.status_code == 403
            assert res.json()["kind"] == "unauthorized"

    def test_disabled_without_configured_key(self):
        services = _services()
        services.settings = replace(services.settings, admin_api_key="")
        res = TestClient(create_app(services)).post("/sync")
        assert res.status_code == 403
        assert res.json() == {
            "error": "manual sync disabled", "kind": "unauthorized",
            "detail": "ATTESTER_ADMIN_KEY is not configured",
        }

    def test_full_sync_ingests_history(self, client, services):
        res = client.post("/sync", json={"full": True}, headers={"X-Attester-Admin-Key": ADMIN_KEY})
        assert res.status_code == 200
        body = res.json()
        assert body["result"]["status"] == "completed"
        assert body["result"]["inserted"] == 2
        assert body["sync"]["cursor"] == 10_000

    def test_recent_sync_window(self, client):
        res = client.post("/sync", json={"blocks": 50}, headers={"X-Attester-Admin-Key": ADMIN_KEY})
        assert res.json()["result"]["from_block"] == 9_951


# ─── Shipped profiles ────────────────────────────────────────────────────────

PROFILE_ENV = (
    "POLICY_ENABLED", "POLICY_MODE", "POLICY_MIN_ACCOUNT_AGE_DAYS", "POLICY_MIN_FOLLOWERS",
    "POLICY_MIN_FOLLOWING", "POLICY_MIN_POSTS", "POLICY_VERIFIED_ADDRESS_BONUS", "PROOF_CONTRACT_VIEW",
)


def _aged(fid, wallet, days, followers=0, following=0, verified=True):
    return IdentityRecord(
        fid, wallet,
        account_created_at = datetime.now(timezone.utc) - timedelta(days=days),
        follower_count     = followers,
        following_count    = following,
        verified_addresses = frozenset({wallet}) if verified else frozenset(),
    )


class TestProfiles:

    @pytest.fixture(autouse=True)
    def _clean_env(self, monkeypatch):
        for name in PROFILE_ENV:
            monkeypatch.delenv(name, raising=False)

    def _client(self, profile, identities, events=(), view_revoked=()):
        settings = Settings(
            private_key           = TEST_PRIVATE_KEY,
            verifying_contract    = VERIFYING_CONTRACT,
            revoke_helper_address = REVOKE_HELPER,
            deploy_block          = 100,
            chunk_delay_sec       = 0,
            profile               = resolve_profile(profile),
        )
        chain = FakeChain(head=10_000, events=events)
        chain.view_revoked = {(w.lower(), TOKEN.lower(), SPENDER.lower()) for w in view_revoked}
        services = build_services(
            settings, chain=chain, resolver=StaticIdentityResolver(identities), store=MemoryProofStore(),
        )
        return TestClient(create_app(services)), services

    def test_strict_signs_without_policy(self):
        client, services = self._client("strict", [_aged(1, WALLET, days=0, verified=False)],
                                        events=[revoked(WALLET, 500)])
        res = client.post("/attest", json=_claim(WALLET))
        assert res.status_code == 200
        assert res.json()["issuer"] == services.signer.address

    def test_anti_farming_rejects_new_quiet_wallet(self):
        fresh = _aged(1, WALLET, days=1 / 24)
        client, _ = self._client("anti_farming", [fresh], events=[revoked(WALLET, 500)])
        res = client.post("/attest", json=_claim(WALLET))
        assert res.status_code == 400
        body = res.json()
        assert body["kind"] == "policy_not_met"
        assert [r.split(":")[0] for r in body["reasons"]] == ["account_age", "social"]

    def test_anti_farming_accepts_established_wallet(self):
        client, _ = self._client("anti_farming", [_aged(2, WALLET, days=30)], events=[revoked(WALLET, 500)])
        assert client.post("/attest", json=_claim(WALLET)).status_code == 200

    def test_anti_farming_accepts_new_wallet_with_following(self):
        busy = _aged(3, WALLET, days=1, followers=25, following=8)
        client, _ = self._client("anti_farming", [busy], events=[revoked(WALLET, 500)])
        assert client.post("/attest", json=_claim(WALLET)).status_code == 200

    def test_anti_farming_requires_verified_address(self):
        unverified = _aged(4, WALLET, days=30, followers=25, following=8, verified=False)
        client, _ = self._client("anti_farming", [unverified], events=[revoked(WALLET, 500)])
        res = client.post("/attest", json=_claim(WALLET))
        assert res.status_code == 400
        assert res.json()["reasons"] == ["verified_address: no verified address on identity"]

    def test_live_only_signs_without_touching_store(self):
        client, services = self._client("live_only", [_aged(5, WALLET, days=30)], events=[revoked(WALLET, 500)])
        assert client.post("/attest", json=_claim(WALLET)).status_code == 200
        assert [(f, t, w.lower()) for f, t, w in services.chain.log_calls] == [(100, 10_000, WALLET)]
        assert client.get(f"/check/{WALLET}").json()["count"] == 0

    def test_strict_view_falls_back_to_has_revoked(self):
        client, services = self._client("strict_view", [_aged(6, WALLET, days=30)], view_revoked=[WALLET])
        res = client.post("/attest", json=_claim(WALLET))
        assert res.status_code == 200
        assert client.get("/api/v1/attester/info").json()["proof_tiers"][-1] == "contract"

    def test_strict_rejects_view_only_revoke(self):
        client, _ = self._client("strict", [_aged(7, WALLET, days=30)], view_revoked=[WALLET])
        res = client.post("/attest", json=_claim(WALLET))
        assert res.status_code == 400
        assert res.json()["kind"] == "proof_not_found"
