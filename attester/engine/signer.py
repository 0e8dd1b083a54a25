"""
FarGuard Attester - Attestation Signer
======================================

EIP-712 structured-data signer for RevokeAndClaim attestations.

The on-chain verifier rebuilds the digest from its own domain:

    digest = keccak256("\\x19\\x01" || domainSeparator || hashStruct(Attestation))

    domainSeparator = keccak256(abi.encode(
        EIP712DOMAIN_TYPEHASH, keccak256(name), keccak256(version),
        chainId, verifyingContract
    ))

    hashStruct = keccak256(abi.encode(
        ATTESTATION_TYPEHASH, wallet, fid, nonce, deadline, token, spender
    ))

If any domain field differs from the contract's, ecrecover yields a different
address and the claim reverts. Nothing fails here, so the domain is built
once from validated settings and never per request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from eth_abi import encode as abi_encode
from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3

from engine.errors import SigningFailure

logger = logging.getLogger("farguard.signer")

# Member order and names must match the verifier's ATTESTATION_TYPEHASH
ATTESTATION_TYPES = {
    "Attestation": [
        {"name": "wallet",   "type": "address"},
        {"name": "fid",      "type": "uint256"},
        {"name": "nonce",    "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
        {"name": "token",    "type": "address"},
        {"name": "spender",  "type": "address"},
    ],
}

EIP712_DOMAIN_TYPE = "EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)"
ATTESTATION_TYPE   = "Attestation(address wallet,uint256 fid,uint256 nonce,uint256 deadline,address token,address spender)"


def _keccak256(data: bytes) -> bytes:
    return bytes(Web3.keccak(data))


@dataclass(frozen=True)
class EIP712Domain:
    name:               str
    version:            str
    chain_id:           int
    verifying_contract: str

    def as_dict(self) -> dict:
        return {
            "name":              self.name,
            "version":           self.version,
            "chainId":           self.chain_id,
            "verifyingContract": Web3.to_checksum_address(self.verifying_contract),
        }

    def separator(self) -> bytes:
        return _keccak256(abi_encode(
            ["bytes32", "bytes32", "bytes32", "uint256", "address"],
            [
                _keccak256(EIP712_DOMAIN_TYPE.encode()),
                _keccak256(self.name.encode()),
                _keccak256(self.version.encode()),
                self.chain_id,
                Web3.to_checksum_address(self.verifying_contract),
            ],
        ))


@dataclass(frozen=True)
class AttestationPayload:
    wallet:      str
    external_id: int
    nonce:       int
    deadline:    int
    token:       str
    spender:     str

    def to_message(self) -> dict:
        return {
            "wallet":   Web3.to_checksum_address(self.wallet),
            "fid":      int(self.external_id),
            "nonce":    int(self.nonce),
            "deadline": int(self.deadline),
            "token":    Web3.to_checksum_address(self.token),
            "spender":  Web3.to_checksum_address(self.spender),
        }

    def struct_hash(self) -> bytes:
        m = self.to_message()
        return _keccak256(abi_encode(
            ["bytes32", "address", "uint256", "uint256", "uint256", "address", "address"],
            [
                _keccak256(ATTESTATION_TYPE.encode()),
                m["wallet"], m["fid"], m["nonce"], m["deadline"], m["token"], m["spender"],
            ],
        ))


@dataclass(frozen=True)
class SignedAttestation:
    payload:      AttestationPayload
    signature:    str      # 0x-prefixed 65-byte r||s||v
    signing_hash: str      # 0x-prefixed EIP-712 digest
    issuer:       str


class AttestationSigner:

    def __init__(self, domain: EIP712Domain, private_key_hex: Optional[str] = None):
        self.domain = domain
        if private_key_hex:
            key = private_key_hex.strip()
            self._account = Account.from_key(key if key.startswith("0x") else "0x" + key)
        else:
            logger.warning("No private key provided - generating ephemeral key (DEV ONLY)")
            self._account = Account.create()
        self.address = self._account.address
        logger.info(f"Attester address: {self.address}")
        logger.info(
            f"Signing domain: {domain.name} v{domain.version} chainId={domain.chain_id} "
            f"verifyingContract={domain.verifying_contract}"
        )

    def signing_hash(self, payload: AttestationPayload, domain: Optional[EIP712Domain] = None) -> bytes:
        """EIP-712 digest computed directly with abi.encode semantics."""
        domain = domain or self.domain
        return _keccak256(b"\x19\x01" + domain.separator() + payload.struct_hash())

    def _signable(self, payload: AttestationPayload, domain: EIP712Domain):
        return encode_typed_data(
            domain_data  = domain.as_dict(),
            message_types = ATTESTATION_TYPES,
            message_data = payload.to_message(),
        )

    def sign(self, payload: AttestationPayload) -> SignedAttestation:
        try:
            signed = Account.sign_message(
                self._signable(payload, self.domain), private_key=self._account.key
            )
            digest = self.signing_hash(payload)
        except Exception as e:
            logger.error(f"[SIGN] signing failed for wallet={payload.wallet}: {e}", exc_info=True)
            raise SigningFailure(f"could not sign attestation: {type(e).__name__}") from e

        return SignedAttestation(
            payload      = payload,
            signature    = "0x" + bytes(signed.signature).hex(),
            signing_hash = "0x" + digest.hex(),
            issuer       = self.address,
        )

    def recover(
        self,
        payload:   AttestationPayload,
        signature: str,
        domain:    Optional[EIP712Domain] = None,
    ) -> str:
        """Address that produced ``signature`` over ``payload`` under ``domain``."""
        return Account.recover_message(
            self._signable(payload, domain or self.domain), signature=signature
        )

    def verify(
        self,
        payload:   AttestationPayload,
        signature: str,
        domain:    Optional[EIP712Domain] = None,
    ) -> bool:
        try:
            return self.recover(payload, signature, domain) == self.address
        except Exception:
            return False
