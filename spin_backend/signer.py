# signer.py
"""
Off-chain signer for reward claims.

Two claim kinds are signed:
- mint:  Fries1155.mintWithSignature(to, tokenId, amount, nonce, sig)
- claim: RewardVault.claim(to, token, amount, tokenId, expiry, nonce, isERC1155, sig)

Both digests are solidityPackedKeccak256 over the exact field order the contracts
rebuild on-chain, with the destination contract address last (domain separation).
The digest bytes are signed as an EIP-191 personal message, which is what the
contracts' ECDSA.toEthSignedMessageHash(...).recover(sig) expects.
Reordering a field or changing a type breaks verification on-chain.
"""
from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from .errors import SigningError

log = logging.getLogger("spin.signer")

MINT_TYPES = ["address", "uint256", "uint256", "uint256", "address"]
CLAIM_TYPES = ["address", "address", "uint256", "uint256", "uint256", "uint256", "bool", "address"]

NONCE_BITS = 64
DEFAULT_CLAIM_TTL_SEC = 24 * 60 * 60


@dataclass(frozen=True)
class ClaimSignature:
    signature: str
    expires_at: int


def new_nonce() -> int:
    # Sole replay guard the contracts know about: must be unpredictable and never reused.
    return secrets.randbits(NONCE_BITS)


class SignatureIssuer:
    def __init__(
        self,
        private_key: str,
        mint_contract_address: str,
        claim_vault_address: str,
        claim_ttl_sec: int = DEFAULT_CLAIM_TTL_SEC,
    ):
        if not private_key:
            raise SigningError("signer private key not configured")
        try:
            self._account = Account.from_key(private_key)
        except Exception as e:
            raise SigningError("invalid signer private key") from e
        self.mint_contract_address = mint_contract_address
        self.claim_vault_address = claim_vault_address
        self.claim_ttl_sec = int(claim_ttl_sec)

    @property
    def signer_address(self) -> str:
        return self._account.address

    # ---------------------------
    # Digests
    # ---------------------------
    def mint_digest(self, wallet: str, token_id: int, amount: int, nonce: int) -> bytes:
        return bytes(Web3.solidity_keccak(
            MINT_TYPES,
            [
                _checksum(wallet),
                int(token_id),
                int(amount),
                int(nonce),
                _checksum(self.mint_contract_address),
            ],
        ))

    def claim_digest(
        self,
        wallet: str,
        token: str,
        amount: int,
        token_id: int,
        expires_at: int,
        nonce: int,
    ) -> bytes:
        is_multi_token = int(token_id) > 0
        return bytes(Web3.solidity_keccak(
            CLAIM_TYPES,
            [
                _checksum(wallet),
                _checksum(token),
                int(amount),
                int(token_id),
                int(expires_at),
                int(nonce),
                is_multi_token,
                _checksum(self.claim_vault_address),
            ],
        ))

    # ---------------------------
    # Signing
    # ---------------------------
    def sign_mint(self, wallet: str, token_id: int, amount: int, nonce: int) -> str:
        try:
            digest = self.mint_digest(wallet, token_id, amount, nonce)
            return self._sign_digest(digest)
        except SigningError:
            raise
        except Exception as e:
            log.error("[signer] mint signature failed: %s", type(e).__name__)
            raise SigningError("mint signature failed") from e

    def sign_claim(
        self,
        wallet: str,
        token: str,
        amount: int,
        token_id: int,
        nonce: int,
        now: Optional[int] = None,
    ) -> ClaimSignature:
        ts = int(time.time()) if now is None else int(now)
        expires_at = ts + self.claim_ttl_sec
        try:
            digest = self.claim_digest(wallet, token, amount, token_id, expires_at, nonce)
            return ClaimSignature(signature=self._sign_digest(digest), expires_at=expires_at)
        except SigningError:
            raise
        except Exception as e:
            log.error("[signer] claim signature failed: %s", type(e).__name__)
            raise SigningError("claim signature failed") from e

    def recover(self, digest: bytes, signature: str) -> str:
        """Address that produced signature over digest (same recovery the contracts do)."""
        return Account.recover_message(encode_defunct(primitive=digest), signature=signature)

    def _sign_digest(self, digest: bytes) -> str:
        signed = self._account.sign_message(encode_defunct(primitive=digest))
        return Web3.to_hex(signed.signature)


def _checksum(addr: str) -> str:
    if not addr:
        raise SigningError("missing address for signature")
    return Web3.to_checksum_address(addr)
