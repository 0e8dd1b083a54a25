"""
FarGuard Attester - Chain read layer
====================================

Thin async adapter over the Base JSON-RPC endpoint (web3.py AsyncWeb3).

Only the RevokeHelper surface is consumed:
    event    Revoked(address indexed wallet, address indexed token, address indexed spender)
    function hasRevoked(address wallet, address token, address spender) view returns (bool)

Every call has a finite timeout and a bounded exponential backoff. When the
attempts are exhausted the caller gets ChainQueryTransient and decides how to
degrade; nothing in here crashes the process.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from web3 import AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound

from engine.errors import ChainQueryTransient
from engine.store import ActionProofRecord

logger = logging.getLogger("farguard.chain")

T = TypeVar("T")

REVOKED_EVENT_SIGNATURE = "Revoked(address,address,address)"
REVOKED_TOPIC           = "0x" + bytes(Web3.keccak(text=REVOKED_EVENT_SIGNATURE)).hex()

REVOKE_HELPER_ABI = [
    {
        "inputs": [
            {"internalType": "address", "name": "wallet",  "type": "address"},
            {"internalType": "address", "name": "token",   "type": "address"},
            {"internalType": "address", "name": "spender", "type": "address"},
        ],
        "name": "hasRevoked",
        "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
]

# Programming errors are not provider hiccups; let them surface
_NON_TRANSIENT = (TypeError, AttributeError, NotImplementedError)


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


def address_topic(address: str) -> str:
    """Left-pad an address to a 32-byte indexed topic."""
    return "0x" + "0" * 24 + address.lower().removeprefix("0x")


def topic_address(topic: Any) -> str:
    return "0x" + _hex(topic)[-40:]


def decode_revoked_log(log: Any) -> Optional[ActionProofRecord]:
    """Extract (wallet, token, spender) from a Revoked log; None if it is not one."""
    topics = [_hex(t) for t in (log.get("topics") or [])]
    if len(topics) < 4 or topics[0] != REVOKED_TOPIC:
        return None
    if log.get("removed"):
        return None
    return ActionProofRecord(
        wallet           = topic_address(topics[1]),
        token            = topic_address(topics[2]),
        spender          = topic_address(topics[3]),
        block_number     = int(log.get("blockNumber") or 0),
        transaction_hash = _hex(log.get("transactionHash") or b""),
    )


async def with_retries(
    op:          Callable[[], Awaitable[T]],
    *,
    label:       str,
    attempts:    int   = 3,
    base_delay:  float = 0.5,
    timeout_sec: float = 15.0,
) -> T:
    """Run ``op`` with a per-attempt timeout and doubling delay between attempts."""
    delay = base_delay
    last_error: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(op(), timeout=timeout_sec)
        except _NON_TRANSIENT:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_error = e
            logger.warning(
                f"[CHAIN] {label} attempt {attempt}/{attempts} failed: {type(e).__name__}: {e}"
            )
        if attempt < attempts:
            await asyncio.sleep(delay)
            delay *= 2

    raise ChainQueryTransient(f"{label} failed after {attempts} attempts: {type(last_error).__name__}")


class ChainReader:

    def __init__(
        self,
        rpc_url:               str,
        revoke_helper_address: str,
        *,
        max_retries:           int   = 3,
        retry_base_delay:      float = 0.5,
        timeout_sec:           float = 15.0,
        w3:                    Optional[AsyncWeb3] = None,
    ):
        self.w3            = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        self.revoke_helper = Web3.to_checksum_address(revoke_helper_address)
        self._retry_kwargs = {
            "attempts":    max(1, max_retries),
            "base_delay":  retry_base_delay,
            "timeout_sec": timeout_sec,
        }
        self._contract = self.w3.eth.contract(address=self.revoke_helper, abi=REVOKE_HELPER_ABI)

    async def _retry(self, op: Callable[[], Awaitable[T]], label: str) -> T:
        return await with_retries(op, label=label, **self._retry_kwargs)

    async def block_number(self) -> int:
        async def _op():
            return int(await self.w3.eth.block_number)
        return await self._retry(_op, "eth_blockNumber")

    def revoked_filter(
        self,
        from_block: int,
        to_block:   int,
        wallet:     Optional[str] = None,
        token:      Optional[str] = None,
        spender:    Optional[str] = None,
    ) -> dict:
        topics: List[Optional[str]] = [
            REVOKED_TOPIC,
            address_topic(wallet) if wallet else None,
            address_topic(token) if token else None,
            address_topic(spender) if spender else None,
        ]
        while topics and topics[-1] is None:
            topics.pop()
        return {
            "address":   self.revoke_helper,
            "fromBlock": int(from_block),
            "toBlock":   int(to_block),
            "topics":    topics,
        }

    async def revoked_logs(
        self,
        from_block: int,
        to_block:   int,
        wallet:     Optional[str] = None,
        token:      Optional[str] = None,
        spender:    Optional[str] = None,
    ) -> List[ActionProofRecord]:
        params = self.revoked_filter(from_block, to_block, wallet, token, spender)

        async def _op():
            return await self.w3.eth.get_logs(params)

        logs = await self._retry(_op, f"eth_getLogs[{from_block}..{to_block}]")
        records = []
        for log in logs:
            record = decode_revoked_log(log)
            if record is not None:
                records.append(record)
        return records

    async def has_revoked(self, wallet: str, token: str, spender: str) -> bool:
        fn = self._contract.functions.hasRevoked(
            Web3.to_checksum_address(wallet),
            Web3.to_checksum_address(token),
            Web3.to_checksum_address(spender),
        )

        async def _op():
            return bool(await fn.call())

        return await self._retry(_op, "hasRevoked")

    async def transaction_receipt(self, tx_hash: str) -> Optional[Any]:
        async def _op():
            try:
                return await self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                # Pending or dropped, not a transport error
                return None

        return await self._retry(_op, f"eth_getTransactionReceipt[{tx_hash[:10]}]")

    async def confirm_log(self, log: Any) -> bool:
        """
        A log seen near the head may belong to a block that is later reorged out.
        Records are never deleted, so confirm against the receipt first.
        """
        receipt = await self.transaction_receipt(_hex(log.get("transactionHash") or b""))
        if receipt is None or int(receipt.get("status", 0)) != 1:
            return False
        return _hex(receipt.get("blockHash") or b"") == _hex(log.get("blockHash") or b"")

    async def create_log_filter(self) -> Any:
        async def _op():
            return await self.w3.eth.filter({"address": self.revoke_helper, "topics": [REVOKED_TOPIC]})
        return await self._retry(_op, "eth_newFilter")
