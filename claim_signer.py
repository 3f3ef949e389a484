"""EIP-712 mint authorization for a PENDING reward claim.

The typed data must match the FitRewards claim contract exactly:

    domain  = {name: "FitRewards", version: "1", chainId, verifyingContract}
    Claim(address to, uint256 amountWei, bytes32 claimIdHash, uint256 nonce, uint256 deadline)

Any drift in names, order or types yields a signature the contract rejects
without telling us why.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import is_address, keccak, to_checksum_address
from flask import current_app

from chain_rpc import ChainRPCError, read_claim_nonce
from claim_service import (
    ClaimDependencyError,
    ClaimStateConflict,
    ClaimValidationError,
    load_owned_claim,
)
from daily_cap import quantize_fit
from models_rewards import CLAIM_PENDING


CLAIM_TYPES = {
    "Claim": [
        {"name": "to", "type": "address"},
        {"name": "amountWei", "type": "uint256"},
        {"name": "claimIdHash", "type": "bytes32"},
        {"name": "nonce", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
    ],
}


class SignerConfigError(Exception):
    pass


@dataclass(frozen=True)
class SignerConfig:
    rpc_url: str
    contract_address: str
    private_key: str
    chain_id: int = 84532  # Base Sepolia
    domain_name: str = "FitRewards"
    domain_version: str = "1"
    ttl_seconds: int = 600
    rpc_timeout: float = 12
    token_decimals: int = 18

    @classmethod
    def from_config(cls, config) -> "SignerConfig":
        contract = config.get("FITREWARDS_CLAIM_ADDRESS")
        pk = config.get("SIGNER_PRIVATE_KEY")
        if not contract:
            raise SignerConfigError("missing FITREWARDS_CLAIM_ADDRESS")
        if not pk:
            raise SignerConfigError("missing SIGNER_PRIVATE_KEY")
        return cls(
            rpc_url=config.get("CLAIM_RPC_URL") or "https://sepolia.base.org",
            contract_address=to_checksum_address(contract),
            private_key=pk if pk.startswith("0x") else "0x" + pk,
            chain_id=int(config.get("CLAIM_CHAIN_ID", 84532)),
            domain_name=config.get("CLAIM_DOMAIN_NAME", "FitRewards"),
            domain_version=str(config.get("CLAIM_DOMAIN_VERSION", "1")),
            ttl_seconds=int(config.get("CLAIM_SIGNATURE_TTL_SECONDS", 600)),
            rpc_timeout=float(config.get("RPC_TIMEOUT_SECONDS", 12)),
            token_decimals=int(config.get("TOKEN_DECIMALS", 18)),
        )


@dataclass(frozen=True)
class ClaimAuthorization:
    amount_wei: int
    claim_id_hash: str
    deadline: int
    nonce: int
    signature: str

    def to_dict(self):
        # uint256 values go out as strings; JS numbers lose precision above 2**53.
        return {
            "amountWei": str(self.amount_wei),
            "claimIdHash": self.claim_id_hash,
            "deadline": self.deadline,
            "nonce": str(self.nonce),
            "signature": self.signature,
        }


def claim_id_hash(claim_id: str) -> bytes:
    """keccak256 of the utf-8 claim id (same as ethers.id)."""
    return keccak(text=claim_id)


def fit_to_wei(amount, decimals: int = 18) -> int:
    return int(quantize_fit(amount) * (Decimal(10) ** decimals))


def checksum_wallet(wallet) -> str:
    wallet = str(wallet or "").strip()
    if not is_address(wallet):
        raise ClaimValidationError("invalid wallet address")
    return to_checksum_address(wallet)


def build_claim_typed_data(cfg: SignerConfig, to: str, amount_wei: int, id_hash: bytes, nonce: int, deadline: int):
    domain = {
        "name": cfg.domain_name,
        "version": cfg.domain_version,
        "chainId": cfg.chain_id,
        "verifyingContract": cfg.contract_address,
    }
    message = {
        "to": to_checksum_address(to),
        "amountWei": int(amount_wei),
        "claimIdHash": id_hash,
        "nonce": int(nonce),
        "deadline": int(deadline),
    }
    return domain, CLAIM_TYPES, message


def sign_claim(cfg: SignerConfig, to: str, claim_id: str, amount, now_ts: int, nonce: int) -> ClaimAuthorization:
    amount_wei = fit_to_wei(amount, cfg.token_decimals)
    id_hash = claim_id_hash(claim_id)
    deadline = int(now_ts) + cfg.ttl_seconds

    domain, types, message = build_claim_typed_data(cfg, to, amount_wei, id_hash, nonce, deadline)
    signable = encode_typed_data(domain_data=domain, message_types=types, message_data=message)
    signed = Account.sign_message(signable, private_key=cfg.private_key)

    return ClaimAuthorization(
        amount_wei=amount_wei,
        claim_id_hash="0x" + id_hash.hex(),
        deadline=deadline,
        nonce=int(nonce),
        signature="0x" + bytes(signed.signature).hex(),
    )


def authorize_claim(user, wallet: str, claim_id, now_ts: int, cfg: SignerConfig | None = None, nonce_reader=None):
    """Sign the mint authorization for the caller's PENDING claim.

    Reads the wallet's on-chain nonce first; RPC or signing failures are retryable.
    """
    to = checksum_wallet(wallet)
    claim = load_owned_claim(user, claim_id)
    # Routes resolve `user` from this same wallet; this guards direct callers.
    if to_checksum_address(user.wallet) != to:
        raise ClaimStateConflict("claim wallet mismatch")
    if claim.status != CLAIM_PENDING:
        raise ClaimStateConflict(f"claim status is {claim.status}")
    if not claim.amount_fit or claim.amount_fit <= 0:
        raise ClaimValidationError("amountFit is 0")

    cfg = cfg or SignerConfig.from_config(current_app.config)
    nonce_reader = nonce_reader or read_claim_nonce
    try:
        nonce = nonce_reader(cfg.rpc_url, cfg.contract_address, to, timeout=cfg.rpc_timeout)
    except ChainRPCError as e:
        current_app.logger.warning("Nonce read failed for %s: %s", to, e)
        raise ClaimDependencyError("nonce read failed, retry") from e

    try:
        auth = sign_claim(cfg, to, claim.id, claim.amount_fit, now_ts, nonce)
    except (ValueError, TypeError) as e:
        current_app.logger.exception("Signing claim %s failed", claim.id)
        raise ClaimDependencyError("signing failed, retry") from e

    current_app.logger.info("Signed claim %s for %s (nonce=%s, deadline=%s)", claim.id, to, nonce, auth.deadline)
    return auth
