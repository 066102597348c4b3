# spin_engine.py
"""
Reward issuance: one spin = one SQLite write transaction.

    GATE_CHECK -> DRAW -> LEDGER_UPDATE -> [SIGN] -> JOURNAL_WRITE -> COMMIT
                                 (any failure -> ROLLBACK)

The gate is evaluated after `BEGIN IMMEDIATE`, so two requests for the same wallet
cannot both observe the pre-spin state. Signing happens before COMMIT: a reward is
never journaled without its attestation and the ledger never moves without a
deliverable reward.
"""
from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .config import Settings
from .eligibility import Eligibility, SpinPath, check_eligibility, evaluate
from .errors import FailureReason, IneligibleError, PersistenceError, SigningError
from .ledger_store import (
    apply_credit_spin,
    apply_free_spin,
    ensure_entry,
    get_entry,
    normalize_wallet,
    record_spin,
    rollback,
)
from .reward_table import Reward, RewardKind, RewardTable
from .signer import SignatureIssuer, new_nonce

log = logging.getLogger("spin.engine")


@dataclass(frozen=True)
class Attestation:
    wallet: str
    claim_kind: str          # "mint" | "claim"
    contract_address: str    # Fries1155 for mint, RewardVault for claim
    token_id: int
    amount: int
    nonce: int
    signature: str
    token: Optional[str] = None
    expires_at: Optional[int] = None

    @property
    def ref(self) -> str:
        return f"{self.claim_kind}:{self.nonce}"


@dataclass(frozen=True)
class SpinOutcome:
    spin_id: int
    wallet: str
    path: SpinPath
    reward: Reward
    points_awarded: int
    points_total: int
    spin_credits: int
    attestation: Optional[Attestation] = None


class SpinEngine:
    def __init__(
        self,
        db_func: Callable[[], sqlite3.Connection],
        issuer: SignatureIssuer,
        reward_table: RewardTable,
        settings: Settings,
        now_func: Callable[[], int] = lambda: int(time.time()),
        nonce_func: Callable[[], int] = new_nonce,
    ):
        self.db_func = db_func
        self.issuer = issuer
        self.reward_table = reward_table
        self.settings = settings
        self.now_func = now_func
        self.nonce_func = nonce_func

    def check_eligibility(self, wallet: str) -> Eligibility:
        """Read-only preview. issue_spin re-checks inside its own transaction."""
        wallet = normalize_wallet(wallet)
        con = self.db_func()
        try:
            return check_eligibility(con, wallet, self.now_func(), self.settings.cooldown_sec)
        except sqlite3.Error as e:
            raise PersistenceError("eligibility lookup failed") from e
        finally:
            con.close()

    def issue_spin(self, wallet: str) -> SpinOutcome:
        wallet = normalize_wallet(wallet)
        cooldown = self.settings.cooldown_sec
        con = self.db_func()
        try:
            ts = int(self.now_func())
            con.execute("BEGIN IMMEDIATE;")

            # GATE_CHECK
            ensure_entry(con, wallet, ts)
            gate = evaluate(get_entry(con, wallet), ts, cooldown)
            if not gate.allowed:
                con.execute("ROLLBACK;")
                log.info("[spin] %s ineligible, %ss remaining", wallet, gate.remaining_seconds)
                raise IneligibleError(gate.denial_reason, gate.remaining_seconds)

            # DRAW
            reward = self.reward_table.draw()
            points = self.settings.spin_bonus_points + reward.points

            # LEDGER_UPDATE (exactly one of: start cooldown, burn credit)
            if gate.path == SpinPath.FREE:
                changed = apply_free_spin(con, wallet, points, ts, cooldown)
                miss_reason = FailureReason.INSUFFICIENT_COOLDOWN
            else:
                changed = apply_credit_spin(con, wallet, points)
                miss_reason = FailureReason.NO_CREDITS
            if not changed:
                con.execute("ROLLBACK;")
                raise IneligibleError(miss_reason, gate.remaining_seconds)

            # SIGN
            attestation = None
            if reward.needs_attestation:
                attestation = self._attest(wallet, reward, ts)

            # JOURNAL_WRITE
            spin_id = record_spin(
                con,
                wallet,
                reward.kind.value,
                reward.value,
                attestation.ref if attestation else None,
                ts,
            )
            after = get_entry(con, wallet)

            con.execute("COMMIT;")
        except IneligibleError:
            raise
        except SigningError:
            rollback(con)
            log.error("[spin] %s aborted: signer failure", wallet)
            raise
        except sqlite3.Error as e:
            rollback(con)
            log.error("[spin] %s aborted: storage failure (%s)", wallet, type(e).__name__)
            raise PersistenceError("spin transaction failed") from e
        except BaseException:
            rollback(con)
            raise
        finally:
            con.close()

        log.info("[spin] %s path=%s reward=%s spin_id=%s", wallet, gate.path.value, reward.value, spin_id)
        return SpinOutcome(
            spin_id=spin_id,
            wallet=wallet,
            path=gate.path,
            reward=reward,
            points_awarded=points,
            points_total=after.points_total,
            spin_credits=after.spin_credits,
            attestation=attestation,
        )

    def _attest(self, wallet: str, reward: Reward, ts: int) -> Attestation:
        nonce = self.nonce_func()
        if reward.kind == RewardKind.NFT:
            sig = self.issuer.sign_mint(wallet, reward.token_id, reward.amount, nonce)
            return Attestation(
                wallet=wallet,
                claim_kind="mint",
                contract_address=self.issuer.mint_contract_address,
                token_id=int(reward.token_id),
                amount=reward.amount,
                nonce=nonce,
                signature=sig,
            )

        s = self.settings
        claim = self.issuer.sign_claim(
            wallet,
            s.partner_token_address,
            s.partner_reward_amount_wei,
            s.partner_token_id,
            nonce,
            now=ts,
        )
        return Attestation(
            wallet=wallet,
            claim_kind="claim",
            contract_address=self.issuer.claim_vault_address,
            token_id=s.partner_token_id,
            amount=s.partner_reward_amount_wei,
            nonce=nonce,
            signature=claim.signature,
            token=s.partner_token_address,
            expires_at=claim.expires_at,
        )
