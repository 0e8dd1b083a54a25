"""
FarGuard Attester - Action-proof store
======================================

Index of observed ``Revoked(wallet, token, spender)`` events keyed by the
lower-cased triple, plus the persisted sync cursor.

Presence is a monotonic fact: records are inserted once (first writer wins)
and never deleted or overwritten. Absence only means "not observed yet".

Backends
  MemoryProofStore  process lifetime, default
  RedisProofStore   REDIS_URL set; survives restarts and is shared between
                    replicas
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Tuple

import redis.asyncio as aioredis

logger = logging.getLogger("farguard.store")

ProofKey = Tuple[str, str, str]

# SET KEYS[1] to ARGV[1] only when it is higher than the stored value
CURSOR_MAX_SCRIPT = """
local cur = redis.call('GET', KEYS[1])
if (not cur) or tonumber(ARGV[1]) > tonumber(cur) then
    redis.call('SET', KEYS[1], ARGV[1])
    return 1
end
return 0
"""


def proof_key(wallet: str, token: str, spender: str) -> ProofKey:
    return (wallet.lower(), token.lower(), spender.lower())


@dataclass(frozen=True)
class ActionProofRecord:
    wallet:           str
    token:            str
    spender:          str
    block_number:     int
    transaction_hash: str
    observed_at:      float = field(default_factory=time.time)

    @property
    def key(self) -> ProofKey:
        return proof_key(self.wallet, self.token, self.spender)

    def normalized(self) -> "ActionProofRecord":
        w, t, s = self.key
        return ActionProofRecord(
            wallet           = w,
            token            = t,
            spender          = s,
            block_number     = int(self.block_number),
            transaction_hash = self.transaction_hash.lower(),
            observed_at      = self.observed_at,
        )

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ActionProofRecord":
        return cls(
            wallet           = data["wallet"],
            token            = data["token"],
            spender          = data["spender"],
            block_number     = int(data["block_number"]),
            transaction_hash = data["transaction_hash"],
            observed_at      = float(data.get("observed_at") or 0.0),
        )


class MemoryProofStore:
    """
    Dict-backed store. All mutations happen on the event loop thread without
    an await in between, so a reader sees a record either fully or not at all.
    """

    backend = "memory"

    def __init__(self):
        self._records: Dict[ProofKey, ActionProofRecord] = {}
        self._by_wallet: Dict[str, List[ProofKey]] = {}
        self._cursor: Optional[int] = None

    async def get(self, wallet: str, token: str, spender: str) -> Optional[ActionProofRecord]:
        return self._records.get(proof_key(wallet, token, spender))

    async def put_if_absent(self, record: ActionProofRecord) -> bool:
        record = record.normalized()
        if record.key in self._records:
            return False
        self._records[record.key] = record
        self._by_wallet.setdefault(record.wallet, []).append(record.key)
        return True

    async def records_for_wallet(self, wallet: str) -> List[ActionProofRecord]:
        return [self._records[k] for k in self._by_wallet.get(wallet.lower(), [])]

    async def count(self) -> int:
        return len(self._records)

    async def load_cursor(self) -> Optional[int]:
        return self._cursor

    async def save_cursor(self, block: int) -> None:
        if self._cursor is None or block > self._cursor:
            self._cursor = block

    async def aclose(self) -> None:
        return None


class RedisProofStore:
    """
    Redis layout
      farguard:proof:<wallet>:<token>:<spender>   JSON record (SETNX)
      farguard:proof:wallet:<wallet>              SET of "<token>:<spender>"
      farguard:proof:count                        counter of inserted records
      farguard:sync:cursor                        last fully synced block
    """

    backend = "redis"
    PREFIX  = "farguard"

    def __init__(self, client: aioredis.Redis):
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisProofStore":
        return cls(aioredis.from_url(url, decode_responses=True))

    def _record_key(self, key: ProofKey) -> str:
        return f"{self.PREFIX}:proof:{key[0]}:{key[1]}:{key[2]}"

    def _wallet_key(self, wallet: str) -> str:
        return f"{self.PREFIX}:proof:wallet:{wallet.lower()}"

    async def get(self, wallet: str, token: str, spender: str) -> Optional[ActionProofRecord]:
        raw = await self._redis.get(self._record_key(proof_key(wallet, token, spender)))
        return ActionProofRecord.from_dict(json.loads(raw)) if raw else None

    async def put_if_absent(self, record: ActionProofRecord) -> bool:
        record = record.normalized()
        inserted = await self._redis.setnx(self._record_key(record.key), json.dumps(record.to_dict()))
        if not inserted:
            return False
        # Only the SETNX winner reaches here; index and counter move together
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.sadd(self._wallet_key(record.wallet), f"{record.token}:{record.spender}")
            pipe.incr(f"{self.PREFIX}:proof:count")
            await pipe.execute()
        return True

    async def records_for_wallet(self, wallet: str) -> List[ActionProofRecord]:
        members = await self._redis.smembers(self._wallet_key(wallet))
        records = []
        for member in sorted(members):
            token, spender = member.split(":", 1)
            record = await self.get(wallet, token, spender)
            if record:
                records.append(record)
        return records

    async def count(self) -> int:
        return int(await self._redis.get(f"{self.PREFIX}:proof:count") or 0)

    async def load_cursor(self) -> Optional[int]:
        raw = await self._redis.get(f"{self.PREFIX}:sync:cursor")
        return int(raw) if raw is not None else None

    async def save_cursor(self, block: int) -> None:
        # Compare-and-set in one server-side step; replicas racing cannot lower it
        await self._redis.eval(CURSOR_MAX_SCRIPT, 1, f"{self.PREFIX}:sync:cursor", int(block))

    async def aclose(self) -> None:
        await self._redis.aclose()


def build_store(redis_url: Optional[str]):
    if redis_url:
        logger.info("[STORE] using Redis proof store")
        return RedisProofStore.from_url(redis_url)
    logger.info("[STORE] using in-memory proof store")
    return MemoryProofStore()
