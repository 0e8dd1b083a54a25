"""
FarGuard Attester - Sync / cache maintainer
===========================================

Ingests RevokeHelper ``Revoked`` events into the proof store.

State machine: Idle -> Syncing -> Idle, single-flight. A trigger that
arrives while a pass is running is skipped immediately (never queued, never
run concurrently), so there are no duplicate writes and the cursor cannot
regress.

Triggers
  startup    catch-up from cursor (or DEPLOY_BLOCK) to head
  periodic   same as startup, every SYNC_INTERVAL_SEC
  on_demand  last ON_DEMAND_BLOCKS blocks in small chunks (proof cache miss)
  manual     POST /sync
  realtime   log-filter poller; upserts single events outside of passes

Cursor rule: the cursor only moves over chunks that are contiguous with it
and were fully processed. A chunk that still fails after retries freezes the
cursor just before it, so the next pass re-scans it. Later chunks of the same
pass are still ingested because presence is monotonic.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple

from engine.errors import ChainQueryTransient
from engine.chain import decode_revoked_log
from engine.store import ActionProofRecord

logger = logging.getLogger("farguard.sync")


@dataclass
class SyncResult:
    trigger:       str
    status:        str                         # completed | partial | skipped | failed | noop
    from_block:    Optional[int]   = None
    to_block:      Optional[int]   = None
    chunks:        int             = 0
    inserted:      int             = 0
    failed_chunks: List[Tuple[int, int]] = field(default_factory=list)
    cursor:        Optional[int]   = None
    started_at:    float           = field(default_factory=time.time)
    duration_ms:   float           = 0.0
    error:         str             = ""

    def to_dict(self) -> dict:
        return {
            "trigger":       self.trigger,
            "status":        self.status,
            "from_block":    self.from_block,
            "to_block":      self.to_block,
            "chunks":        self.chunks,
            "inserted":      self.inserted,
            "failed_chunks": [list(c) for c in self.failed_chunks],
            "cursor":        self.cursor,
            "started_at":    int(self.started_at),
            "duration_ms":   self.duration_ms,
            "error":         self.error,
        }


@dataclass
class SyncState:
    """Everything the maintainer mutates. Owned by exactly one SyncMaintainer."""
    cursor:      Optional[int]        = None     # last fully synced block
    syncing:     bool                 = False
    passes:      int                  = 0
    last_result: Optional[SyncResult] = None
    realtime:    bool                 = False

    def to_dict(self) -> dict:
        return {
            "cursor":      self.cursor,
            "syncing":     self.syncing,
            "passes":      self.passes,
            "realtime":    self.realtime,
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }


def chunk_ranges(from_block: int, to_block: int, size: int) -> List[Tuple[int, int]]:
    """Split an inclusive block range into inclusive chunks of at most ``size`` blocks."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    ranges = []
    start = from_block
    while start <= to_block:
        end = min(start + size - 1, to_block)
        ranges.append((start, end))
        start = end + 1
    return ranges


class SyncMaintainer:

    def __init__(
        self,
        chain,
        store,
        *,
        state:             Optional[SyncState] = None,
        deploy_block:      int   = 0,
        chunk_size:        int   = 2000,
        on_demand_blocks:  int   = 200,
        on_demand_chunk:   int   = 10,
        chunk_delay_sec:   float = 0.25,
        interval_sec:      float = 300.0,
        realtime_poll_sec: float = 5.0,
    ):
        self.chain             = chain
        self.store             = store
        self.state             = state or SyncState()
        self.deploy_block      = max(0, deploy_block)
        self.chunk_size        = chunk_size
        self.on_demand_blocks  = on_demand_blocks
        self.on_demand_chunk   = on_demand_chunk
        self.chunk_delay_sec   = chunk_delay_sec
        self.interval_sec      = interval_sec
        self.realtime_poll_sec = realtime_poll_sec

    @property
    def syncing(self) -> bool:
        return self.state.syncing

    async def load_state(self) -> None:
        """Resume from the cursor persisted by a previous process, if any."""
        persisted = await self.store.load_cursor()
        if persisted is not None and (self.state.cursor is None or persisted > self.state.cursor):
            self.state.cursor = persisted
        logger.info(f"[SYNC] cursor={self.state.cursor} deploy_block={self.deploy_block}")

    def _effective_cursor(self) -> int:
        if self.state.cursor is None:
            return self.deploy_block - 1
        return self.state.cursor

    # ─── Ingestion ───────────────────────────────────────────────────────────

    async def ingest(self, record: ActionProofRecord) -> bool:
        inserted = await self.store.put_if_absent(record)
        if inserted:
            logger.info(
                f"[SYNC] + {record.wallet} token={record.token} spender={record.spender} "
                f"block={record.block_number}"
            )
        return inserted

    async def _advance_cursor(self, block: int) -> None:
        if self.state.cursor is None or block > self.state.cursor:
            self.state.cursor = block
            await self.store.save_cursor(block)

    # ─── Passes ──────────────────────────────────────────────────────────────

    async def _run_pass(
        self,
        trigger:      str,
        chunk_size:   int,
        resolve_range: Callable[[int], Awaitable[Tuple[int, int]]],
    ) -> SyncResult:
        # Check-and-set with no await in between: this is the single-flight gate
        if self.state.syncing:
            logger.info(f"[SYNC] {trigger} skipped: a pass is already running")
            return SyncResult(trigger=trigger, status="skipped", cursor=self.state.cursor)
        self.state.syncing = True

        result = SyncResult(trigger=trigger, status="completed")
        t_start = time.perf_counter()
        try:
            head = await self.chain.block_number()
            from_block, to_block = await resolve_range(head)
            result.from_block, result.to_block = from_block, to_block

            if from_block > to_block:
                result.status = "noop"
                return result

            ranges = chunk_ranges(from_block, to_block, chunk_size)
            frozen = False
            for i, (start, end) in enumerate(ranges):
                if i and self.chunk_delay_sec > 0:
                    await asyncio.sleep(self.chunk_delay_sec)
                try:
                    records = await self.chain.revoked_logs(start, end)
                except ChainQueryTransient as e:
                    logger.warning(f"[SYNC] chunk {start}..{end} skipped: {e}")
                    result.failed_chunks.append((start, end))
                    frozen = True
                    continue

                for record in records:
                    if await self.ingest(record):
                        result.inserted += 1
                result.chunks += 1

                if not frozen and start <= self._effective_cursor() + 1:
                    await self._advance_cursor(end)

            if result.failed_chunks:
                result.status = "partial" if result.chunks else "failed"
            return result
        except ChainQueryTransient as e:
            logger.warning(f"[SYNC] {trigger} aborted: {e}")
            result.status = "failed"
            result.error  = str(e)
            return result
        finally:
            result.cursor      = self.state.cursor
            result.duration_ms = round((time.perf_counter() - t_start) * 1000, 2)
            if result.status != "skipped":
                self.state.passes     += 1
                self.state.last_result = result
            self.state.syncing = False
            logger.info(
                f"[SYNC] {trigger} {result.status}: blocks {result.from_block}..{result.to_block} "
                f"chunks={result.chunks} inserted={result.inserted} "
                f"failed={len(result.failed_chunks)} cursor={result.cursor} ({result.duration_ms}ms)"
            )

    async def catch_up(self, trigger: str = "periodic") -> SyncResult:
        async def _range(head: int) -> Tuple[int, int]:
            return max(self._effective_cursor() + 1, self.deploy_block), head
        return await self._run_pass(trigger, self.chunk_size, _range)

    async def startup_sweep(self) -> SyncResult:
        await self.load_state()
        return await self.catch_up("startup")

    async def sync_recent(self, blocks: Optional[int] = None, trigger: str = "on_demand") -> SyncResult:
        span = blocks or self.on_demand_blocks

        async def _range(head: int) -> Tuple[int, int]:
            return max(self.deploy_block, head - span + 1), head
        return await self._run_pass(trigger, self.on_demand_chunk, _range)

    # ─── Background loops ────────────────────────────────────────────────────

    async def run_periodic(self, stop_event: asyncio.Event) -> None:
        logger.info(f"[SYNC] periodic loop started (every {self.interval_sec:.0f}s)")
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_sec)
            except asyncio.TimeoutError:
                pass
            if stop_event.is_set():
                break
            try:
                await self.catch_up("periodic")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"[SYNC] periodic pass error: {e}")
        logger.info("[SYNC] periodic loop exited")

    async def watch(self, stop_event: asyncio.Event) -> None:
        """
        Real-time ingestion through an eth_newFilter log filter. Events near
        the head are confirmed against their receipt before insertion. Nodes
        that do not support filters disable this loop; periodic sync still
        covers everything.
        """
        try:
            log_filter = await self.chain.create_log_filter()
        except Exception as e:
            logger.warning(f"[SYNC] realtime disabled, log filter unavailable: {e}")
            return

        self.state.realtime = True
        logger.info("[SYNC] realtime log filter installed")
        try:
            while not stop_event.is_set():
                try:
                    entries = await log_filter.get_new_entries()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning(f"[SYNC] realtime poll failed ({e}); reinstalling filter")
                    try:
                        log_filter = await self.chain.create_log_filter()
                    except Exception as e2:
                        logger.warning(f"[SYNC] realtime disabled: {e2}")
                        return
                    entries = []

                for log in entries:
                    record = decode_revoked_log(log)
                    if record is None:
                        continue
                    try:
                        confirmed = await self.chain.confirm_log(log)
                    except ChainQueryTransient as e:
                        logger.warning(f"[SYNC] realtime confirm failed, left to periodic sync: {e}")
                        continue
                    if confirmed:
                        await self.ingest(record)

                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.realtime_poll_sec)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.state.realtime = False
            logger.info("[SYNC] realtime loop exited")
