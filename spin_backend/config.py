# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        return default
    return int(str(raw).strip())


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


@dataclass(frozen=True)
class Settings:
    db_path: str = "spin.db"

    # Signer key + the two contracts its signatures are bound to
    signer_private_key: str = ""
    mint_contract_address: str = ""
    claim_vault_address: str = ""

    # Partner reward redeemed through the vault
    partner_token_address: str = ""
    partner_reward_amount_wei: int = 10 ** 18
    partner_token_id: int = 0

    cooldown_sec: int = 86400
    claim_ttl_sec: int = 86400
    spin_bonus_points: int = 10
    purchase_bonus_points: int = 2

    payment_rpc_url: str = ""
    payment_rpc_timeout_sec: int = 10
    # Merchant address payments must be sent to (empty = not checked)
    payment_recipient: str = ""

    # Shared secret expected from the upstream auth / payment proxy (empty = open)
    service_token: str = ""
    cors_origins: List[str] = field(default_factory=list)


def load_settings(env_file: Optional[str] = None) -> Settings:
    """
    Build Settings from the process environment.

    A .env file (or the given env_file) is loaded first; values already
    exported in the environment win, which is what systemd deployments rely on.
    """
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    origins = [o.strip() for o in _env_str("CORS_ORIGINS").split(",") if o.strip()]

    return Settings(
        db_path=_env_str("SPIN_DB", "spin.db"),
        signer_private_key=_env_str("SIGNER_PRIVATE_KEY"),
        mint_contract_address=_env_str("FRIES1155_ADDRESS"),
        claim_vault_address=_env_str("REWARD_VAULT_ADDRESS"),
        partner_token_address=_env_str("PARTNER_TOKEN_ADDRESS"),
        partner_reward_amount_wei=_env_int("PARTNER_REWARD_AMOUNT_WEI", 10 ** 18),
        partner_token_id=_env_int("PARTNER_TOKEN_ID", 0),
        cooldown_sec=_env_int("COOLDOWN_SEC", 86400),
        claim_ttl_sec=_env_int("CLAIM_TTL_SEC", 86400),
        spin_bonus_points=_env_int("SPIN_BONUS_POINTS", 10),
        purchase_bonus_points=_env_int("PURCHASE_BONUS_POINTS", 2),
        payment_rpc_url=_env_str("PAYMENT_RPC_URL") or _env_str("BASE_SEPOLIA_RPC"),
        payment_rpc_timeout_sec=max(1, _env_int("PAYMENT_RPC_TIMEOUT_SEC", 10)),
        payment_recipient=_env_str("PAYMENT_RECIPIENT").lower(),
        service_token=_env_str("SERVICE_TOKEN"),
        cors_origins=origins,
    )
