# reward_table.py
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


class RewardKind(str, Enum):
    NFT = "nft"
    POINTS = "points"
    PARTNER = "partner"


# ERC-1155 token ids on the reward contract
NFT_BASKET = 1
NFT_FRIES = 2
NFT_SAUCE = 3

NFT_LABELS = {
    NFT_BASKET: "BASKET",
    NFT_FRIES: "FRIES",
    NFT_SAUCE: "SAUCE",
}

DRAW_RANGE = 100
POINTS_MIN = 50
POINTS_MAX = 200

# (inclusive upper bound of the draw value, outcome). Lower bound is the previous row + 1.
BANDS = (
    (5, RewardKind.NFT, NFT_BASKET),     # 6%
    (20, RewardKind.NFT, NFT_FRIES),     # 15%
    (40, RewardKind.NFT, NFT_SAUCE),     # 20%
    (70, RewardKind.POINTS, None),       # 30%
    (99, RewardKind.PARTNER, None),      # 29%
)


@dataclass(frozen=True)
class Reward:
    kind: RewardKind
    value: str
    token_id: Optional[int] = None
    amount: int = 0

    @property
    def needs_attestation(self) -> bool:
        """NFT and partner rewards are redeemed on-chain and need a signed claim."""
        return self.kind in (RewardKind.NFT, RewardKind.PARTNER)

    @property
    def points(self) -> int:
        return self.amount if self.kind == RewardKind.POINTS else 0


def band_for(v: int) -> Tuple[RewardKind, Optional[int]]:
    if not 0 <= v < DRAW_RANGE:
        raise ValueError(f"draw value out of range: {v}")
    for upper, kind, token_id in BANDS:
        if v <= upper:
            return kind, token_id
    raise AssertionError("bands do not cover the draw range")


def reward_for_draw(v: int, points_amount: int = 0) -> Reward:
    """Map a draw value in [0, 100) to its reward. points_amount is only used in the points band."""
    kind, token_id = band_for(v)
    if kind == RewardKind.NFT:
        return Reward(kind=kind, value=NFT_LABELS[token_id], token_id=token_id, amount=1)
    if kind == RewardKind.POINTS:
        if not POINTS_MIN <= points_amount <= POINTS_MAX:
            raise ValueError(f"points amount out of range: {points_amount}")
        return Reward(kind=kind, value=f"{points_amount}_POINTS", amount=points_amount)
    return Reward(kind=kind, value="PARTNER_REWARD")


class RewardTable:
    """
    Fixed-probability reward draw.

    rng must expose randrange() and randint() and defaults to the OS CSPRNG;
    rewards carry monetary value, so never pass a random.Random here in production.
    """

    def __init__(self, rng=None):
        self._rng = rng or secrets.SystemRandom()

    def draw(self) -> Reward:
        v = self._rng.randrange(DRAW_RANGE)
        kind, _ = band_for(v)
        points_amount = 0
        if kind == RewardKind.POINTS:
            points_amount = self._rng.randint(POINTS_MIN, POINTS_MAX)
        return reward_for_draw(v, points_amount)
