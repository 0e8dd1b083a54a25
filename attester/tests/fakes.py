"""
In-process stand-ins for the Base RPC node and Redis, plus fixed test
addresses. Only behaviour the attester relies on is modelled.
"""

import asyncio
from typing import Dict, List, Optional, Set, Tuple

from engine.errors import ChainQueryTransient
from engine.store import ActionProofRecord

TEST_PRIVATE_KEY   = "0x" + "4c" * 32
VERIFYING_CONTRACT = "0x1111111111111111111111111111111111111111"
REVOKE_HELPER      = "0x2222222222222222222222222222222222222222"

WALLET   = "0x00000000000000000000000000000000000000a1"
WALLET_2 = "0x00000000000000000000000000000000000000a2"
WALLET_3 = "0x00000000000000000000000000000000000000a3"
TOKEN    = "0x00000000000000000000000000000000000000b1"
SPENDER  = "0x00000000000000000000000000000000000000c1"


def revoked(wallet: str, block: int, token: str = TOKEN, spender: str = SPENDER) -> ActionProofRecord:
    return ActionProofRecord(
        wallet           = wallet,
        token            = token,
        spender          = spender,
        block_number     = block,
        transaction_hash = "0x" + f"{block:064x}",
    )


class FakeChain:
    """
    Mimics ChainReader. ``events`` is the full on-chain Revoked history;
    ``failing_ranges`` makes exact (from, to) log queries fail after retries.
    """

    def __init__(self, head: int = 1_000, events=()):
        self.head            = head
        self.events: List[ActionProofRecord] = list(events)
        self.failing_ranges: Set[Tuple[int, int]] = set()
        self.fail_head       = False
        self.fail_live       = False
        self.fail_view       = False
        self.view_revoked: Set[Tuple[str, str, str]] = set()
        self.gate: Optional[asyncio.Event] = None
        self.log_calls: List[Tuple[int, int, Optional[str]]] = []
        self.head_calls      = 0

    async def block_number(self) -> int:
        self.head_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_head:
            raise ChainQueryTransient("eth_blockNumber failed after 3 attempts: TimeoutError")
        return self.head

    async def revoked_logs(self, from_block, to_block, wallet=None, token=None, spender=None):
        self.log_calls.append((from_block, to_block, wallet))
        if (from_block, to_block) in self.failing_ranges:
            raise ChainQueryTransient(f"eth_getLogs[{from_block}..{to_block}] failed")
        if wallet is not None and self.fail_live:
            raise ChainQueryTransient("eth_getLogs live query failed")
        out = []
        for r in self.events:
            if not from_block <= r.block_number <= to_block:
                continue
            if wallet and r.wallet.lower() != wallet.lower():
                continue
            if token and r.token.lower() != token.lower():
                continue
            if spender and r.spender.lower() != spender.lower():
                continue
            out.append(r)
        return out

    async def has_revoked(self, wallet, token, spender) -> bool:
        if self.fail_view:
            raise ChainQueryTransient("hasRevoked failed")
        return (wallet.lower(), token.lower(), spender.lower()) in self.view_revoked


class FakeRedis:
    """
    The redis.asyncio commands RedisProofStore issues. Every command yields
    to the event loop first, like a network round trip, so concurrent callers
    interleave between commands. EVAL scripts and MULTI/EXEC pipelines run
    without a yield inside, as Redis runs them atomically.
    """

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.sets: Dict[str, Set[str]] = {}
        self.scripts: List[str] = []
        self.closed = False

    async def get(self, key):
        await asyncio.sleep(0)
        return self.data.get(key)

    async def set(self, key, value):
        await asyncio.sleep(0)
        self.data[key] = str(value)
        return True

    async def setnx(self, key, value):
        await asyncio.sleep(0)
        if key in self.data:
            return False
        self.data[key] = value
        return True

    async def smembers(self, key):
        await asyncio.sleep(0)
        return set(self.sets.get(key, set()))

    async def eval(self, script, numkeys, *keys_and_args):
        # Only the cursor compare-and-set script is modelled
        await asyncio.sleep(0)
        self.scripts.append(script)
        key, value = keys_and_args[0], int(keys_and_args[numkeys])
        current = self.data.get(key)
        if current is None or value > int(current):
            self.data[key] = str(value)
            return 1
        return 0

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    def _sadd(self, key, member):
        self.sets.setdefault(key, set()).add(member)
        return 1

    def _incr(self, key):
        self.data[key] = str(int(self.data.get(key, 0)) + 1)
        return int(self.data[key])

    async def aclose(self):
        self.closed = True


class FakePipeline:

    def __init__(self, redis: FakeRedis):
        self._redis = redis
        self._queued = []
        self.executed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self._queued = []

    def sadd(self, key, member):
        self._queued.append((self._redis._sadd, key, member))
        return self

    def incr(self, key):
        self._queued.append((self._redis._incr, key))
        return self

    async def execute(self):
        await asyncio.sleep(0)
        results = [fn(*args) for fn, *args in self._queued]
        self._queued = []
        self.executed = True
        return results
