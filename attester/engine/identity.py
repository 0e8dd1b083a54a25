"""
FarGuard Attester - Identity Resolver
=====================================

Maps a wallet address to a verified Farcaster identity through the Neynar
directory (``/v2/farcaster/user/bulk-by-address``).

Two outcomes are kept apart on purpose:
  * ``None``                   the directory answered and knows no identity
  * ``ResolutionUnavailable``  the directory could not answer (timeout, 5xx,
                               rate limit, bad API key, undecodable body)

Upstream has returned several payload shapes over time. All of them are
handled in ``decode_identity_response`` and nowhere else.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, FrozenSet, Iterable, List, Optional

import httpx

from engine.errors import IdentityDecodeError, ResolutionUnavailable

logger = logging.getLogger("farguard.identity")

TRANSIENT_STATUS = {408, 425, 429, 500, 502, 503, 504}


@dataclass(frozen=True)
class IdentityRecord:
    """Immutable snapshot of one directory lookup. Never persisted."""
    external_id:        int
    primary_address:    str
    username:           str                = ""
    account_created_at: Optional[datetime] = None
    follower_count:     int                = 0
    following_count:    int                = 0
    post_count:         int                = 0
    verified_addresses: FrozenSet[str]     = field(default_factory=frozenset)

    def account_age_days(self, now: datetime) -> Optional[float]:
        if self.account_created_at is None:
            return None
        return (now - self.account_created_at).total_seconds() / 86400.0


# ─── Decoding boundary ───────────────────────────────────────────────────────

def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        # Some endpoints return ms, some seconds
        seconds = value / 1000.0 if value > 1e12 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _verified_addresses(user: dict) -> FrozenSet[str]:
    raw = user.get("verified_addresses") or user.get("verifications") or []
    if isinstance(raw, dict):
        raw = list(raw.get("eth_addresses") or [])
    return frozenset(str(a).lower() for a in raw if isinstance(a, str))


def _user_entries(payload: Any, address: str) -> List[dict]:
    """Return the candidate user list for ``address`` from any known shape."""
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        raise IdentityDecodeError(f"unexpected identity payload type {type(payload).__name__}")

    key = address.lower()
    for candidate in (key, address):
        if candidate in payload:
            entries = payload[candidate]
            if entries is None:
                return []
            if not isinstance(entries, list):
                raise IdentityDecodeError(f"entry for {key} is not a list")
            return entries
    # Address-keyed map that does not mention our address: a miss
    if payload and all(str(k).lower().startswith("0x") for k in payload):
        return []

    if "users" in payload:
        return payload.get("users") or []
    result = payload.get("result")
    if isinstance(result, dict) and "users" in result:
        return result.get("users") or []
    if "fid" in payload:
        return [payload]
    if not payload:
        return []
    raise IdentityDecodeError(f"unrecognised identity payload keys: {sorted(payload)[:5]}")


def decode_identity_response(payload: Any, address: str) -> Optional[IdentityRecord]:
    """
    Map an upstream payload to an IdentityRecord, ``None`` for "no identity",
    or raise IdentityDecodeError.

    When several identities verify the same address the first entry wins.
    That is a deterministic tie-break, not a guarantee it is the right one.
    """
    entries = [e for e in _user_entries(payload, address) if isinstance(e, dict)]
    if not entries:
        return None

    user = entries[0]
    fid  = _as_int(user.get("fid"))
    if fid <= 0:
        # A user entry without a usable fid is a shape we do not understand
        raise IdentityDecodeError(f"identity entry for {address} has no valid fid ({user.get('fid')!r})")
    if len(entries) > 1:
        logger.info(f"[IDENTITY] {len(entries)} identities for {address}; using first fid={fid}")

    return IdentityRecord(
        external_id        = fid,
        primary_address    = str(user.get("custody_address") or address).lower(),
        username           = str(user.get("username") or ""),
        account_created_at = _parse_timestamp(
            user.get("registered_at") or user.get("created_at") or user.get("timestamp")
        ),
        follower_count     = _as_int(user.get("follower_count")),
        following_count    = _as_int(user.get("following_count")),
        post_count         = _as_int(user.get("cast_count") or user.get("post_count")),
        verified_addresses = _verified_addresses(user),
    )


# ─── Resolvers ───────────────────────────────────────────────────────────────

class NeynarIdentityResolver:
    """Async Neynar client with bounded retry on transient errors."""

    LOOKUP_PATH = "/v2/farcaster/user/bulk-by-address/"

    def __init__(
        self,
        api_key:          str,
        base_url:         str   = "https://api.neynar.com",
        timeout_sec:      float = 15.0,
        max_retries:      int   = 3,
        retry_base_delay: float = 0.5,
        client:           Optional[httpx.AsyncClient] = None,
    ):
        self._api_key     = api_key
        self._base_url    = base_url.rstrip("/")
        self._max_retries = max(1, max_retries)
        self._base_delay  = retry_base_delay
        self._owns_client = client is None
        self._client      = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_sec))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _fetch(self, address: str) -> Optional[Any]:
        response = await self._client.get(
            f"{self._base_url}{self.LOOKUP_PATH}",
            params={"addresses": address.lower()},
            headers={
                "x-api-key":              self._api_key,
                "accept":                 "application/json",
                "x-neynar-experimental":  "false",
            },
        )
        if response.status_code == 404:
            return None
        if response.status_code in (401, 403):
            # Not retryable, and not the caller's fault either
            raise ResolutionUnavailable(f"identity provider rejected credentials ({response.status_code})")
        response.raise_for_status()
        try:
            return response.json()
        except ValueError as e:
            raise IdentityDecodeError(f"identity provider returned non-JSON body: {e}") from e

    async def resolve(self, address: str) -> Optional[IdentityRecord]:
        delay = self._base_delay
        last_error: Optional[Exception] = None

        for attempt in range(1, self._max_retries + 1):
            try:
                payload = await self._fetch(address)
                if payload is None:
                    return None
                return decode_identity_response(payload, address)
            except ResolutionUnavailable:
                raise
            except httpx.HTTPStatusError as e:
                if e.response.status_code not in TRANSIENT_STATUS:
                    raise ResolutionUnavailable(
                        f"identity provider error {e.response.status_code}"
                    ) from e
                last_error = e
            except httpx.TransportError as e:
                # Timeouts, connection resets, DNS
                last_error = e

            logger.warning(
                f"[IDENTITY] lookup attempt {attempt}/{self._max_retries} failed: "
                f"{type(last_error).__name__}: {last_error}"
            )
            if attempt < self._max_retries:
                await asyncio.sleep(delay)
                delay *= 2

        logger.error(f"[IDENTITY] provider unavailable after {self._max_retries} attempts")
        raise ResolutionUnavailable(f"identity provider unavailable: {type(last_error).__name__}")


class StaticIdentityResolver:
    """In-process directory keyed by custody and verified addresses."""

    def __init__(self, records: Iterable[IdentityRecord] = ()):
        self._by_address = {}
        for record in records:
            self.add(record)

    def add(self, record: IdentityRecord, *addresses: str) -> None:
        keys = {record.primary_address, *record.verified_addresses, *addresses}
        for addr in keys:
            self._by_address[addr.lower()] = record

    async def resolve(self, address: str) -> Optional[IdentityRecord]:
        return self._by_address.get(address.lower())

    async def aclose(self) -> None:
        return None
