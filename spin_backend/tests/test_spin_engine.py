"""
Tests for reward issuance.

Tests cover:
1. First free spin (NFT) and the immediate second attempt
2. Credit path vs free path
3. Points and partner rewards
4. Rollback when signing or storage fails
5. Concurrent spins for one wallet
"""

import threading

import pytest

from spin_backend.eligibility import SpinPath
from spin_backend.errors import FailureReason, IneligibleError, PersistenceError, SigningError
from spin_backend.ledger_store import count_spins, credit_purchase, db, fetch_spins, get_entry
from spin_backend.reward_table import RewardKind, RewardTable
from spin_backend.signer import SignatureIssuer
from spin_backend.spin_engine import SpinEngine
from conftest import CLAIM_VAULT, MINT_CONTRACT, PARTNER_TOKEN, T0, TEST_KEY, WALLET, OTHER_WALLET, ScriptedRng

DAY = 86400


class BrokenIssuer(SignatureIssuer):
    def sign_mint(self, wallet, token_id, amount, nonce):
        raise SigningError("hsm unavailable")

    def sign_claim(self, wallet, token, amount, token_id, nonce, now=None):
        raise SigningError("hsm unavailable")


def entry_of(db_func, wallet=WALLET):
    con = db_func()
    try:
        return get_entry(con, wallet)
    finally:
        con.close()


def spins_of(db_func, wallet=WALLET):
    con = db_func()
    try:
        return fetch_spins(con, wallet)
    finally:
        con.close()


def buy_credits(db_func, n, wallet=WALLET):
    con = db_func()
    try:
        con.execute("BEGIN IMMEDIATE;")
        credit_purchase(con, wallet, n, 0, T0)
        con.execute("COMMIT;")
    finally:
        con.close()


class TestFirstSpin:

    def test_new_wallet_is_eligible(self, make_engine):
        gate = make_engine().check_eligibility(WALLET)
        assert gate.allowed
        assert gate.path == SpinPath.FREE

    def test_basket_spin(self, make_engine, db_func, issuer):
        engine = make_engine(draws=[3])
        out = engine.issue_spin(WALLET.upper().replace("0X", "0x"))

        assert out.wallet == WALLET
        assert out.path == SpinPath.FREE
        assert out.reward.kind == RewardKind.NFT
        assert out.reward.token_id == 1 and out.reward.value == "BASKET"
        assert out.points_awarded == 10

        entry = entry_of(db_func)
        assert entry.points_total == 10
        assert entry.last_spin_at == T0
        assert entry.spin_credits == 0

        att = out.attestation
        assert att.claim_kind == "mint"
        assert att.contract_address == MINT_CONTRACT
        digest = issuer.mint_digest(WALLET, 1, 1, att.nonce)
        assert issuer.recover(digest, att.signature) == issuer.signer_address

        records = spins_of(db_func)
        assert len(records) == 1
        assert records[0]["reward_kind"] == "nft"
        assert records[0]["reward_value"] == "BASKET"
        assert records[0]["attestation_ref"] == f"mint:{att.nonce}"
        assert att.signature not in records[0]["attestation_ref"]

    def test_immediate_second_spin_is_refused(self, make_engine, db_func):
        engine = make_engine()
        engine.issue_spin(WALLET)

        with pytest.raises(IneligibleError) as exc:
            engine.issue_spin(WALLET)
        assert exc.value.reason == FailureReason.INSUFFICIENT_COOLDOWN
        assert exc.value.remaining_seconds == DAY

        assert entry_of(db_func).points_total == 10
        assert len(spins_of(db_func)) == 1

    def test_free_spin_again_after_cooldown(self, make_engine, clock, db_func):
        engine = make_engine()
        engine.issue_spin(WALLET)
        clock.advance(DAY - 1)
        with pytest.raises(IneligibleError) as exc:
            engine.issue_spin(WALLET)
        assert exc.value.remaining_seconds == 1

        clock.advance(1)
        out = engine.issue_spin(WALLET)
        assert out.path == SpinPath.FREE
        assert entry_of(db_func).last_spin_at == T0 + DAY


class TestCreditPath:

    def test_credit_consumed_inside_cooldown(self, make_engine, db_func, clock):
        buy_credits(db_func, 2)
        engine = make_engine()

        first = engine.issue_spin(WALLET)
        assert first.path == SpinPath.FREE
        assert first.spin_credits == 2

        clock.advance(60)
        second = engine.issue_spin(WALLET)
        assert second.path == SpinPath.CREDIT
        assert second.spin_credits == 1

        entry = entry_of(db_func)
        # credit spin must not restart the cooldown
        assert entry.last_spin_at == T0
        assert entry.spin_credits == 1
        assert entry.points_total == 20

    def test_credits_run_out(self, make_engine, db_func):
        buy_credits(db_func, 1)
        engine = make_engine()
        engine.issue_spin(WALLET)
        engine.issue_spin(WALLET)
        with pytest.raises(IneligibleError):
            engine.issue_spin(WALLET)
        assert entry_of(db_func).spin_credits == 0
        assert len(spins_of(db_func)) == 2

    def test_eligibility_reports_credit_path(self, make_engine, db_func):
        buy_credits(db_func, 1)
        engine = make_engine()
        engine.issue_spin(WALLET)
        gate = engine.check_eligibility(WALLET)
        assert gate.allowed and gate.path == SpinPath.CREDIT
        assert gate.remaining_seconds == DAY


class TestRewardKinds:

    def test_points_reward_adds_bonus_and_amount(self, make_engine, db_func):
        out = make_engine(draws=[50], points=[120]).issue_spin(WALLET)
        assert out.reward.kind == RewardKind.POINTS
        assert out.attestation is None
        assert out.points_awarded == 130
        assert entry_of(db_func).points_total == 130
        assert spins_of(db_func)[0]["attestation_ref"] is None
        assert spins_of(db_func)[0]["reward_value"] == "120_POINTS"

    def test_partner_reward_gets_vault_claim(self, make_engine, db_func, issuer, settings):
        out = make_engine(draws=[80]).issue_spin(WALLET)
        att = out.attestation
        assert out.reward.kind == RewardKind.PARTNER
        assert att.claim_kind == "claim"
        assert att.contract_address == CLAIM_VAULT
        assert att.token == PARTNER_TOKEN
        assert att.amount == settings.partner_reward_amount_wei
        assert att.expires_at == T0 + DAY

        digest = issuer.claim_digest(WALLET, PARTNER_TOKEN, att.amount, att.token_id, att.expires_at, att.nonce)
        assert issuer.recover(digest, att.signature) == issuer.signer_address
        # partner rewards only carry the participation bonus
        assert entry_of(db_func).points_total == 10

    def test_nonce_is_fresh_per_spin(self, make_engine, db_func, clock):
        buy_credits(db_func, 3)
        engine = make_engine(draws=[3])
        nonces = set()
        for _ in range(4):
            nonces.add(engine.issue_spin(WALLET).attestation.nonce)
        assert len(nonces) == 4


class TestRollback:

    def test_signer_failure_leaves_ledger_untouched(self, db_func, settings, clock):
        broken = BrokenIssuer(TEST_KEY, MINT_CONTRACT, CLAIM_VAULT)
        engine = SpinEngine(db_func, broken, RewardTable(ScriptedRng([3])), settings, now_func=clock)

        with pytest.raises(SigningError):
            engine.issue_spin(WALLET)

        assert entry_of(db_func) is None
        assert spins_of(db_func) == []

    def test_signer_failure_keeps_credit(self, db_func, settings, clock, make_engine):
        buy_credits(db_func, 1)
        make_engine(draws=[50]).issue_spin(WALLET)

        broken = BrokenIssuer(TEST_KEY, MINT_CONTRACT, CLAIM_VAULT)
        engine = SpinEngine(db_func, broken, RewardTable(ScriptedRng([80])), settings, now_func=clock)
        with pytest.raises(SigningError):
            engine.issue_spin(WALLET)

        entry = entry_of(db_func)
        assert entry.spin_credits == 1
        assert len(spins_of(db_func)) == 1

    def test_points_reward_needs_no_signer(self, db_func, settings, clock):
        broken = BrokenIssuer(TEST_KEY, MINT_CONTRACT, CLAIM_VAULT)
        engine = SpinEngine(db_func, broken, RewardTable(ScriptedRng([60], [55])), settings, now_func=clock)
        assert engine.issue_spin(WALLET).points_awarded == 65

    def test_storage_failure_is_persistence_error(self, tmp_path, issuer, settings, clock):
        # database without schema: every statement fails
        engine = SpinEngine(
            lambda: db(str(tmp_path / "empty.db")),
            issuer,
            RewardTable(ScriptedRng([3])),
            settings,
            now_func=clock,
        )
        with pytest.raises(PersistenceError):
            engine.issue_spin(WALLET)


class TestConcurrency:

    WORKERS = 8

    def _race(self, engine, wallets):
        barrier = threading.Barrier(len(wallets))
        results = []
        lock = threading.Lock()

        def worker(w):
            barrier.wait()
            try:
                engine.issue_spin(w)
                outcome = "ok"
            except IneligibleError:
                outcome = "ineligible"
            with lock:
                results.append((w, outcome))

        threads = [threading.Thread(target=worker, args=(w,)) for w in wallets]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)
        return results

    def test_same_wallet_spins_once(self, make_engine, db_func):
        engine = make_engine(draws=[3])
        results = self._race(engine, [WALLET] * self.WORKERS)

        outcomes = [o for _, o in results]
        assert outcomes.count("ok") == 1
        assert outcomes.count("ineligible") == self.WORKERS - 1
        assert entry_of(db_func).points_total == 10
        con = db_func()
        assert count_spins(con, WALLET) == 1
        con.close()

    def test_credits_are_never_overspent(self, make_engine, db_func):
        buy_credits(db_func, 3)
        engine = make_engine(draws=[50], points=[100])
        results = self._race(engine, [WALLET] * self.WORKERS)

        # one free spin + three credit spins
        assert [o for _, o in results].count("ok") == 4
        entry = entry_of(db_func)
        assert entry.spin_credits == 0
        assert entry.points_total == 4 * 110

    def test_different_wallets_all_succeed(self, make_engine):
        engine = make_engine(draws=[3])
        results = self._race(engine, [WALLET, OTHER_WALLET])
        assert sorted(o for _, o in results) == ["ok", "ok"]
