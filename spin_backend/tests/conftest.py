import pytest
import requests

from spin_backend.config import Settings
from spin_backend.ledger_store import db, init_db
from spin_backend.payments import PaymentReceipt
from spin_backend.reward_table import RewardTable
from spin_backend.signer import SignatureIssuer
from spin_backend.spin_engine import SpinEngine


# Well-known throwaway key (web3.py docs); never funded.
TEST_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
MINT_CONTRACT = "0x1111111111111111111111111111111111111111"
CLAIM_VAULT = "0x2222222222222222222222222222222222222222"
PARTNER_TOKEN = "0x3333333333333333333333333333333333333333"

WALLET = "0xabc0000000000000000000000000000000000001"
OTHER_WALLET = "0xabc0000000000000000000000000000000000002"
T0 = 1_700_000_000


class ScriptedRng:
    """Stands in for SystemRandom: returns queued draw values, then repeats the last one."""

    def __init__(self, draws, points=(100,)):
        self.draws = list(draws)
        self.points = list(points)

    def randrange(self, n):
        v = self.draws.pop(0) if len(self.draws) > 1 else self.draws[0]
        assert 0 <= v < n
        return v

    def randint(self, a, b):
        v = self.points.pop(0) if len(self.points) > 1 else self.points[0]
        assert a <= v <= b
        return v


class Clock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class StubPaymentSource:
    def __init__(self, receipts=None):
        self.receipts = receipts or {}
        self.calls = []

    def lookup(self, tx_hash):
        self.calls.append(tx_hash)
        return self.receipts.get(tx_hash, PaymentReceipt(exists=False, status_ok=False))


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status}")

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.requests = []

    def post(self, url, json=None, timeout=None):
        self.requests.append((url, json, timeout))
        if self.exc:
            raise self.exc
        return self.response


@pytest.fixture
def settings(tmp_path):
    return Settings(
        db_path=str(tmp_path / "spin.db"),
        signer_private_key=TEST_KEY,
        mint_contract_address=MINT_CONTRACT,
        claim_vault_address=CLAIM_VAULT,
        partner_token_address=PARTNER_TOKEN,
    )


@pytest.fixture
def db_func(settings):
    con = db(settings.db_path)
    init_db(con)
    con.close()

    def _connect():
        return db(settings.db_path)

    return _connect


@pytest.fixture
def issuer():
    return SignatureIssuer(TEST_KEY, MINT_CONTRACT, CLAIM_VAULT)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def make_engine(db_func, issuer, settings, clock):
    def _make(draws=(3,), points=(100,), signer=None):
        return SpinEngine(
            db_func,
            signer or issuer,
            RewardTable(ScriptedRng(draws, points)),
            settings,
            now_func=clock,
        )

    return _make
