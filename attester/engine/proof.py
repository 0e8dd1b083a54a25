"""
FarGuard Attester - Action-Proof Checker
========================================

A proof is a ``Revoked(wallet, token, spender)`` event emitted by the
RevokeHelper for exactly that triple. Nothing weaker counts: wallet nonce,
balances or "sent some transaction to the helper" prove activity, not the
revoke, and were dropped.

Tiers (first hit wins):
  1. store        proof store lookup, O(1)
  2. on_demand    bounded recent sync (small chunks), then store again;
                  skipped when a sync is already running
  3. live_query   one eth_getLogs from DEPLOY_BLOCK to head filtered on all
                  three indexed topics; a hit is backfilled into the store
  4. contract     hasRevoked(wallet, token, spender) view call (opt-in);
                  a hit is backfilled with block_number 0

Transient chain failures degrade a tier to "no proof" with a warning; they
never escape as exceptions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from engine.errors import ChainQueryTransient
from engine.store import ActionProofRecord

logger = logging.getLogger("farguard.proof")


@dataclass(frozen=True)
class ProofCheck:
    found:    bool
    source:   str                              # store | on_demand | live_query | contract | none
    record:   Optional[ActionProofRecord] = None
    degraded: bool = False                     # a tier was skipped because of chain errors


class ActionProofChecker:

    def __init__(
        self,
        chain,
        store,
        maintainer=None,
        *,
        deploy_block:      int  = 0,
        use_cache:         bool = True,
        use_contract_view: bool = False,
    ):
        self.chain             = chain
        self.store             = store
        self.maintainer        = maintainer
        self.deploy_block      = max(0, deploy_block)
        self.use_cache         = use_cache
        self.use_contract_view = use_contract_view

    async def has_proof(self, wallet: str, token: str, spender: str) -> bool:
        return (await self.check(wallet, token, spender)).found

    async def check(self, wallet: str, token: str, spender: str) -> ProofCheck:
        degraded = False
        tag = f"{wallet[:10]}../{token[:10]}../{spender[:10]}.."

        if self.use_cache:
            # 1. store
            record = await self.store.get(wallet, token, spender)
            if record:
                logger.info(f"[PROOF] {tag} hit: store (block {record.block_number})")
                return ProofCheck(True, "store", record)

            # 2. on-demand recent sync
            if self.maintainer is not None:
                if self.maintainer.syncing:
                    logger.info(f"[PROOF] {tag} sync in flight, going straight to live query")
                else:
                    result = await self.maintainer.sync_recent()
                    degraded = degraded or result.status in ("failed", "partial")
                    record = await self.store.get(wallet, token, spender)
                    if record:
                        logger.info(f"[PROOF] {tag} hit: on-demand sync (block {record.block_number})")
                        return ProofCheck(True, "on_demand", record, degraded)

        # 3. live log query over the full history
        try:
            head = await self.chain.block_number()
            records = await self.chain.revoked_logs(
                self.deploy_block, head, wallet=wallet, token=token, spender=spender
            )
        except ChainQueryTransient as e:
            logger.warning(f"[PROOF] {tag} live query degraded to no-proof: {e}")
            records = []
            degraded = True

        if records:
            record = min(records, key=lambda r: r.block_number)
            if self.use_cache:
                await self.store.put_if_absent(record)
            logger.info(f"[PROOF] {tag} hit: live query (block {record.block_number})")
            return ProofCheck(True, "live_query", record, degraded)

        # 4. hasRevoked() view
        if self.use_contract_view:
            try:
                revoked = await self.chain.has_revoked(wallet, token, spender)
            except ChainQueryTransient as e:
                logger.warning(f"[PROOF] {tag} hasRevoked degraded to no-proof: {e}")
                revoked = False
                degraded = True
            if revoked:
                record = ActionProofRecord(
                    wallet=wallet, token=token, spender=spender,
                    block_number=0, transaction_hash="",
                )
                if self.use_cache:
                    await self.store.put_if_absent(record)
                logger.info(f"[PROOF] {tag} hit: hasRevoked() view")
                return ProofCheck(True, "contract", record.normalized(), degraded)

        logger.info(f"[PROOF] {tag} no proof (degraded={degraded})")
        return ProofCheck(False, "none", None, degraded)
