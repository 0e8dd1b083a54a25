"""
FarGuard Attester - Attestation Orchestrator
============================================

Pipeline per claim request (each stage runs once, any failure is terminal):

    Received -> IdentityChecked -> ProofChecked -> PolicyChecked -> Signed -> Responded

    1. validate + checksum wallet / token / spender     -> invalid_input (400)
    2. resolve identity                                 -> identity_not_found (403)
                                                           identity_provider_unavailable (503)
    3. action proof                                     -> proof_not_found (400)
    4. eligibility policy (when the profile enables it) -> policy_not_met (400)
    5. build payload (fresh nonce, deadline = now + TTL) and sign
                                                        -> signing_failure (500)

No partial attestation ever leaves this module.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from web3 import Web3

from engine.errors import (
    AttesterError,
    ClaimRejected,
    ErrorKind,
    ResolutionUnavailable,
    SigningFailure,
)
from engine.policy import EligibilityPolicy
from engine.signer import AttestationPayload, AttestationSigner

logger = logging.getLogger("farguard.attest")

ATTESTATION_TTL_SEC = 600

NOT_VERIFIED_ERROR = "not a verified identity"
NO_PROOF_ERROR     = "no proof: record the revoke on RevokeHelper first"


class NonceSource:
    """
    Strictly increasing nonces derived from the microsecond clock. Two
    issuances in the same microsecond (or after a clock step back) still get
    distinct values.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._last  = 0
        self._lock  = threading.Lock()

    def next(self) -> int:
        with self._lock:
            candidate  = int(self._clock() * 1_000_000)
            self._last = max(candidate, self._last + 1)
            return self._last


@dataclass(frozen=True)
class AttestationResult:
    signature:    str
    nonce:        int
    deadline:     int
    external_id:  int
    issuer:       str
    wallet:       str
    token:        str
    spender:      str
    issued_at:    int
    signing_hash: str
    proof_source: str

    def to_response(self) -> dict:
        return {
            "signature":   self.signature,
            "nonce":       str(self.nonce),
            "deadline":    self.deadline,
            "externalId":  self.external_id,
            "issuer":      self.issuer,
            # Field names used by the existing RevokeAndClaim frontend
            "sig":         self.signature,
            "fid":         self.external_id,
            "issuedBy":    self.issuer,
        }


def normalize_address(value: Optional[str], field_name: str) -> str:
    if not value or not isinstance(value, str):
        raise ClaimRejected(ErrorKind.INVALID_INPUT, "wallet, token, spender required",
                            detail=f"{field_name} is missing")
    value = value.strip()
    if not Web3.is_address(value):
        raise ClaimRejected(ErrorKind.INVALID_INPUT, f"invalid {field_name} address",
                            detail=f"{field_name} is not a 20-byte hex address")
    return Web3.to_checksum_address(value)


class AttestationOrchestrator:

    def __init__(
        self,
        resolver,
        proof_checker,
        signer:  AttestationSigner,
        policy:  Optional[EligibilityPolicy] = None,
        *,
        ttl_sec: int = ATTESTATION_TTL_SEC,
        clock:   Callable[[], float] = time.time,
        nonces:  Optional[NonceSource] = None,
    ):
        self.resolver      = resolver
        self.proof_checker = proof_checker
        self.signer        = signer
        self.policy        = policy or EligibilityPolicy()
        self.ttl_sec       = ttl_sec
        self._clock        = clock
        self._nonces       = nonces or NonceSource(clock)

    async def handle_claim(self, wallet: str, token: str, spender: str) -> AttestationResult:
        # ── Received ─────────────────────────────────────────────────────────
        wallet  = normalize_address(wallet, "wallet")
        token   = normalize_address(token, "token")
        spender = normalize_address(spender, "spender")
        logger.info(f"[ATTEST] request wallet={wallet} token={token} spender={spender}")

        # ── IdentityChecked ──────────────────────────────────────────────────
        try:
            identity = await self.resolver.resolve(wallet)
        except ResolutionUnavailable as e:
            logger.warning(f"[ATTEST] identity provider unavailable for {wallet}: {e}")
            raise ClaimRejected(
                ErrorKind.IDENTITY_PROVIDER_UNAVAILABLE,
                "identity provider unavailable, try again shortly",
                detail=e.detail,
            ) from e
        if identity is None:
            logger.info(f"[ATTEST] {wallet} rejected: no verified identity")
            raise ClaimRejected(ErrorKind.IDENTITY_NOT_FOUND, NOT_VERIFIED_ERROR,
                                detail="wallet is not verified on any Farcaster account")
        logger.info(f"[ATTEST] {wallet} identity fid={identity.external_id} ({identity.username or '-'})")

        # ── ProofChecked ─────────────────────────────────────────────────────
        proof = await self.proof_checker.check(wallet, token, spender)
        if not proof.found:
            detail = "no Revoked(wallet, token, spender) event observed for this triple"
            if proof.degraded:
                detail += " (chain queries were degraded; retry may succeed)"
            raise ClaimRejected(ErrorKind.PROOF_NOT_FOUND, NO_PROOF_ERROR, detail=detail)

        # ── PolicyChecked ────────────────────────────────────────────────────
        now = self._clock()
        if self.policy.active:
            decision = self.policy.evaluate(identity, datetime.fromtimestamp(now, tz=timezone.utc))
            logger.info(
                f"[ATTEST] policy fid={identity.external_id} passed={decision.passed} checks={decision.checks}"
            )
            if not decision.passed:
                raise ClaimRejected(ErrorKind.POLICY_NOT_MET, "eligibility policy not met",
                                    detail="; ".join(decision.reasons), reasons=decision.reasons)

        # ── Signed ───────────────────────────────────────────────────────────
        issued_at = int(now)
        payload = AttestationPayload(
            wallet      = wallet,
            external_id = identity.external_id,
            nonce       = self._nonces.next(),
            deadline    = issued_at + self.ttl_sec,
            token       = token,
            spender     = spender,
        )
        try:
            signed = self.signer.sign(payload)
        except SigningFailure as e:
            raise ClaimRejected(ErrorKind.SIGNING_FAILURE, "internal error", detail="signing failed") from e

        logger.info(
            f"[ATTEST] issued fid={identity.external_id} wallet={wallet} nonce={payload.nonce} "
            f"deadline={payload.deadline} proof={proof.source} digest={signed.signing_hash}"
        )
        return AttestationResult(
            signature    = signed.signature,
            nonce        = payload.nonce,
            deadline     = payload.deadline,
            external_id  = identity.external_id,
            issuer       = signed.issuer,
            wallet       = wallet,
            token        = token,
            spender      = spender,
            issued_at    = issued_at,
            signing_hash = signed.signing_hash,
            proof_source = proof.source,
        )

    async def attest(self, wallet: str, token: str, spender: str):
        """handle_claim() that returns the rejection instead of raising it."""
        try:
            return await self.handle_claim(wallet, token, spender)
        except ClaimRejected as rejection:
            return rejection
        except AttesterError as e:
            logger.error(f"[ATTEST] unmapped {e.kind.value}: {e}", exc_info=True)
            return ClaimRejected(ErrorKind.INTERNAL_ERROR, "internal error", detail=e.kind.value)
