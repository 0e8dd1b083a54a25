"""
FarGuard Attester - Configuration
=================================

Environment-driven settings. ``.env`` is loaded by ``load_settings()`` so the
same variables work locally and on the host.

The attester used to ship as many near-identical services (interaction
required vs. open, anti-farming vs. none, cached vs. live-query proof). Those
variants are now named profiles over a single pipeline:

  strict        cached proof (store -> on-demand sync -> live query), no policy
  anti_farming  strict + eligibility policy (account age OR social floors)
  live_only     live log query only, no local store tiers, no policy
  strict_view   strict + hasRevoked() view call as a final proof tier
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import List, Optional

from dotenv import load_dotenv

from engine.orchestrator import ATTESTATION_TTL_SEC
from engine.policy import PolicyConfig

DEFAULT_CHAIN_ID    = 8453                # Base mainnet
DEFAULT_RPC_URL     = "https://mainnet.base.org"
DEFAULT_NEYNAR_URL  = "https://api.neynar.com"
DEFAULT_DOMAIN_NAME = "RevokeAndClaim"
DEFAULT_DOMAIN_VER  = "1"


@dataclass(frozen=True)
class Profile:
    name:               str
    use_cache:          bool = True
    use_contract_view:  bool = False
    policy:             PolicyConfig = field(default_factory=PolicyConfig)


PROFILES = {
    "strict": Profile(name="strict"),
    "anti_farming": Profile(
        name   = "anti_farming",
        policy = PolicyConfig(
            enabled                = True,
            mode                   = "any",
            min_account_age_days   = 7,
            min_followers          = 10,
            min_following          = 5,
            verified_address_bonus = True,
        ),
    ),
    "live_only": Profile(name="live_only", use_cache=False),
    "strict_view": Profile(name="strict_view", use_contract_view=True),
}


@dataclass(frozen=True)
class Settings:
    # Signing domain
    private_key:           Optional[str]
    verifying_contract:    str
    chain_id:              int = DEFAULT_CHAIN_ID
    domain_name:           str = DEFAULT_DOMAIN_NAME
    domain_version:        str = DEFAULT_DOMAIN_VER
    attestation_ttl_sec:   int = ATTESTATION_TTL_SEC

    # Chain
    rpc_url:               str = DEFAULT_RPC_URL
    revoke_helper_address: str = ""
    deploy_block:          int = 0

    # Identity provider
    neynar_api_key:        str = ""
    neynar_api_url:        str = DEFAULT_NEYNAR_URL

    # Sync / proof tuning
    sync_chunk_size:       int   = 2000
    on_demand_blocks:      int   = 200
    on_demand_chunk:       int   = 10
    chunk_delay_sec:       float = 0.25
    sync_interval_sec:     float = 300.0
    realtime:              bool  = False
    realtime_poll_sec:     float = 5.0
    max_retries:           int   = 3
    retry_base_delay_sec:  float = 0.5
    http_timeout_sec:      float = 15.0

    # Storage
    redis_url:             Optional[str] = None

    # Pipeline
    profile:               Profile = field(default_factory=lambda: PROFILES["strict"])

    # HTTP boundary
    allowed_origins:       List[str] = field(default_factory=lambda: ["http://localhost:3000"])
    admin_api_key:         str = ""

    @property
    def policy(self) -> PolicyConfig:
        return self.profile.policy


# ─── Env helpers ─────────────────────────────────────────────────────────────

def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    return float(raw) if raw else default


def _policy_overrides(base: PolicyConfig) -> PolicyConfig:
    """POLICY_* variables tweak the profile's thresholds without a new profile."""
    return replace(
        base,
        enabled                = _env_bool("POLICY_ENABLED", base.enabled),
        mode                   = (os.getenv("POLICY_MODE") or base.mode).strip().lower(),
        min_account_age_days   = _env_int("POLICY_MIN_ACCOUNT_AGE_DAYS", base.min_account_age_days),
        min_followers          = _env_int("POLICY_MIN_FOLLOWERS", base.min_followers),
        min_following          = _env_int("POLICY_MIN_FOLLOWING", base.min_following),
        min_posts              = _env_int("POLICY_MIN_POSTS", base.min_posts),
        verified_address_bonus = _env_bool("POLICY_VERIFIED_ADDRESS_BONUS", base.verified_address_bonus),
    )


def resolve_profile(name: str) -> Profile:
    key = (name or "strict").strip().lower()
    if key not in PROFILES:
        raise ValueError(f"Unknown ATTESTER_PROFILE '{name}'. Known: {', '.join(sorted(PROFILES))}")
    profile = PROFILES[key]
    return replace(
        profile,
        use_contract_view = _env_bool("PROOF_CONTRACT_VIEW", profile.use_contract_view),
        policy            = _policy_overrides(profile.policy),
    )


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Build Settings from the process environment (and ``.env`` if present)."""
    load_dotenv(env_file)

    raw_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")

    return Settings(
        private_key           = (os.getenv("ATTESTER_PRIVATE_KEY") or os.getenv("ATTESTER_PK") or "").strip() or None,
        verifying_contract    = (os.getenv("VERIFYING_CONTRACT") or "").strip(),
        chain_id              = _env_int("CHAIN_ID", DEFAULT_CHAIN_ID),
        domain_name           = os.getenv("DOMAIN_NAME", DEFAULT_DOMAIN_NAME),
        domain_version        = os.getenv("DOMAIN_VERSION", DEFAULT_DOMAIN_VER),
        rpc_url               = (os.getenv("BASE_RPC") or DEFAULT_RPC_URL).strip(),
        revoke_helper_address = (os.getenv("REVOKE_HELPER_ADDRESS") or "").strip(),
        deploy_block          = _env_int("DEPLOY_BLOCK", 0),
        neynar_api_key        = (os.getenv("NEYNAR_API_KEY") or "").strip(),
        neynar_api_url        = (os.getenv("NEYNAR_API_URL") or DEFAULT_NEYNAR_URL).rstrip("/"),
        sync_chunk_size       = _env_int("SYNC_CHUNK_SIZE", 2000),
        on_demand_blocks      = _env_int("ON_DEMAND_BLOCKS", 200),
        on_demand_chunk       = _env_int("ON_DEMAND_CHUNK", 10),
        chunk_delay_sec       = _env_float("CHUNK_DELAY_SEC", 0.25),
        sync_interval_sec     = _env_float("SYNC_INTERVAL_SEC", 300.0),
        realtime              = _env_bool("REALTIME", False),
        realtime_poll_sec     = _env_float("REALTIME_POLL_SEC", 5.0),
        max_retries           = _env_int("CHAIN_MAX_RETRIES", 3),
        retry_base_delay_sec  = _env_float("RETRY_BASE_DELAY_SEC", 0.5),
        http_timeout_sec      = _env_float("HTTP_TIMEOUT_SEC", 15.0),
        redis_url             = (os.getenv("REDIS_URL") or "").strip() or None,
        profile               = resolve_profile(os.getenv("ATTESTER_PROFILE", "strict")),
        allowed_origins       = [o.strip() for o in raw_origins.split(",") if o.strip()],
        admin_api_key         = (os.getenv("ATTESTER_ADMIN_KEY") or "").strip(),
    )


def validate_settings(settings: Settings) -> List[str]:
    """
    Hard configuration errors abort startup (returned list is non-fatal warnings).

    A wrong verifying contract or chain id does not fail at signing time; the
    contract silently rejects every claim. So both addresses are mandatory.
    """
    from web3 import Web3

    for name, value in (
        ("VERIFYING_CONTRACT", settings.verifying_contract),
        ("REVOKE_HELPER_ADDRESS", settings.revoke_helper_address),
    ):
        if not value or not Web3.is_address(value):
            raise ValueError(f"{name} must be set to a valid address (got {value!r})")
    if settings.chain_id <= 0:
        raise ValueError(f"CHAIN_ID must be positive (got {settings.chain_id})")
    if settings.on_demand_chunk <= 0 or settings.sync_chunk_size <= 0:
        raise ValueError("SYNC_CHUNK_SIZE and ON_DEMAND_CHUNK must be positive")

    warnings: List[str] = []
    if not settings.private_key:
        warnings.append(
            "NO ATTESTER_PRIVATE_KEY SET - A RANDOM EPHEMERAL KEY IS BEING USED! "
            "Signatures will not verify on-chain and the issuer changes on every restart."
        )
    if not settings.neynar_api_key:
        warnings.append("NEYNAR_API_KEY is empty - every identity lookup will fail.")
    if not settings.admin_api_key:
        warnings.append("ATTESTER_ADMIN_KEY is empty - POST /sync is disabled.")
    if settings.deploy_block == 0 and settings.profile.use_cache:
        warnings.append("DEPLOY_BLOCK is 0 - the startup sweep will scan the whole chain.")
    return warnings
