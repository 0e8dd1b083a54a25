"""
FarGuard Attester - Error taxonomy
==================================

Every failure the pipeline can produce carries an ``ErrorKind``. Layers below
the orchestrator raise or return these typed errors; only the orchestrator /
HTTP boundary turns a kind into a status code (see ``HTTP_STATUS``).
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional


class ErrorKind(str, Enum):
    INVALID_INPUT                 = "invalid_input"
    UNAUTHORIZED                  = "unauthorized"
    IDENTITY_NOT_FOUND            = "identity_not_found"
    IDENTITY_PROVIDER_UNAVAILABLE = "identity_provider_unavailable"
    PROOF_NOT_FOUND               = "proof_not_found"
    CHAIN_QUERY_TRANSIENT         = "chain_query_transient"
    POLICY_NOT_MET                = "policy_not_met"
    SIGNING_FAILURE               = "signing_failure"
    INTERNAL_ERROR                = "internal_error"


HTTP_STATUS = {
    ErrorKind.INVALID_INPUT:                 400,
    ErrorKind.UNAUTHORIZED:                  403,
    ErrorKind.IDENTITY_NOT_FOUND:            403,
    ErrorKind.IDENTITY_PROVIDER_UNAVAILABLE: 503,
    ErrorKind.PROOF_NOT_FOUND:               400,
    ErrorKind.CHAIN_QUERY_TRANSIENT:         503,
    ErrorKind.POLICY_NOT_MET:                400,
    ErrorKind.SIGNING_FAILURE:               500,
    ErrorKind.INTERNAL_ERROR:                500,
}


class AttesterError(Exception):
    kind: ErrorKind = ErrorKind.INTERNAL_ERROR

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.kind.value)
        self.detail = detail


class ResolutionUnavailable(AttesterError):
    """Identity provider could not answer (network, 5xx, auth, undecodable body)."""
    kind = ErrorKind.IDENTITY_PROVIDER_UNAVAILABLE


class IdentityDecodeError(ResolutionUnavailable):
    """Upstream returned a payload shape we do not recognise."""


class ChainQueryTransient(AttesterError):
    """RPC timeout / rate limit / connection error. Retried, never fatal."""
    kind = ErrorKind.CHAIN_QUERY_TRANSIENT


class SigningFailure(AttesterError):
    """Malformed payload or unusable key. Configuration bug, never retried."""
    kind = ErrorKind.SIGNING_FAILURE


class ClaimRejected(AttesterError):
    """
    Terminal outcome of a claim request that did not produce an attestation.
    Carries the human-readable ``error`` string shown to the caller and, for
    policy failures, the list of unmet rules.
    """

    def __init__(
        self,
        kind:    ErrorKind,
        error:   str,
        detail:  str = "",
        reasons: Optional[List[str]] = None,
    ):
        super().__init__(detail or error)
        self.kind    = kind
        self.error   = error
        self.reasons = list(reasons or [])

    @property
    def status_code(self) -> int:
        return HTTP_STATUS.get(self.kind, 500)

    def to_dict(self) -> dict:
        body = {
            "error":  self.error,
            "kind":   self.kind.value,
            "detail": self.detail,
        }
        if self.reasons:
            body["reasons"] = self.reasons
        return body
