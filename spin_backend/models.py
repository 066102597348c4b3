# models.py
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# Input models
class SpinIn(BaseModel):
    wallet: str


class PaymentVerifyIn(BaseModel):
    tx_id: str = Field(..., alias="txId")
    wallet: str
    sku: str
    amount: Decimal = Decimal("0")

    model_config = ConfigDict(populate_by_name=True)


# Output models
class FailureOut(BaseModel):
    success: bool = False
    reason: str
    remaining_seconds: Optional[int] = None


class EligibilityOut(BaseModel):
    success: bool = True
    wallet: str
    allowed: bool
    path: Optional[str] = None
    remaining_seconds: int
    spin_credits: int
    reason: Optional[str] = None


class RewardOut(BaseModel):
    type: str
    value: str
    token_id: Optional[int] = None
    amount: int = 0


class ClaimPayloadOut(BaseModel):
    # uint256 values are strings so JS clients keep full precision
    claim_kind: str
    contract_address: str
    token_id: int
    amount: str
    nonce: str
    signature: str
    token: Optional[str] = None
    expires_at: Optional[int] = None


class SpinOut(BaseModel):
    success: bool = True
    spin_id: int
    path: str
    reward: RewardOut
    points_awarded: int
    points_total: int
    spin_credits: int
    signature: Optional[str] = None
    claim_payload: Optional[ClaimPayloadOut] = None


class SpinRecordOut(BaseModel):
    spin_id: int
    wallet: str
    reward_kind: str
    reward_value: str
    attestation_ref: Optional[str] = None
    created_at: int


class LedgerOut(BaseModel):
    wallet: str
    points_total: int
    spin_credits: int
    last_spin_at: Optional[int] = None
    total_spins: int
    server_time: int


class SettleOut(BaseModel):
    success: bool = True
    order_id: str
    credits_added: int
    already_settled: bool = False
    reason: Optional[str] = None


class OrderOut(BaseModel):
    order_id: str
    wallet: str
    sku: str
    amount_usdc: str
    status: str
    from_address: Optional[str] = None
    block_number: Optional[int] = None
    credits_added: int
    completed_at: int


class ConfigOut(BaseModel):
    cooldown_sec: int
    claim_ttl_sec: int
    spin_bonus_points: int
    purchase_bonus_points: int
    mint_contract_address: str
    claim_vault_address: str
    signer_address: str
    skus: Dict[str, int] = Field(default_factory=dict)
    reward_kinds: List[str] = Field(default_factory=list)
