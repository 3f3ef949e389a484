from decimal import Decimal
from unittest import mock

import pytest
from eth_abi import encode as abi_encode
from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import keccak, to_checksum_address

import chain_rpc
from chain_rpc import ChainRPCError
from claim_service import (
    ClaimDependencyError,
    ClaimNotFound,
    ClaimStateConflict,
    ClaimValidationError,
    confirm_inapp,
    prepare_claim,
)
from claim_signer import (
    CLAIM_TYPES,
    SignerConfig,
    SignerConfigError,
    authorize_claim,
    build_claim_typed_data,
    claim_id_hash,
    fit_to_wei,
    sign_claim,
)
from conftest import CLAIM_CONTRACT, FIXED_NOW, SIGNER_KEY, WALLET


NOW_TS = 1741964400

DOMAIN_TYPEHASH = keccak(text="EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)")
CLAIM_TYPEHASH = keccak(text="Claim(address to,uint256 amountWei,bytes32 claimIdHash,uint256 nonce,uint256 deadline)")


def _cfg(**kw):
    base = dict(rpc_url="http://rpc.invalid", contract_address=CLAIM_CONTRACT, private_key=SIGNER_KEY)
    base.update(kw)
    return SignerConfig(**base)


def _recover(cfg, to, auth):
    id_hash = bytes.fromhex(auth.claim_id_hash[2:])
    domain, types, message = build_claim_typed_data(cfg, to, auth.amount_wei, id_hash, auth.nonce, auth.deadline)
    signable = encode_typed_data(domain_data=domain, message_types=types, message_data=message)
    return Account.recover_message(signable, signature=auth.signature)


def test_claim_type_layout():
    assert [f["name"] for f in CLAIM_TYPES["Claim"]] == ["to", "amountWei", "claimIdHash", "nonce", "deadline"]
    assert [f["type"] for f in CLAIM_TYPES["Claim"]] == ["address", "uint256", "bytes32", "uint256", "uint256"]


def test_fit_to_wei():
    assert fit_to_wei(Decimal("25")) == 25 * 10**18
    assert fit_to_wei("0.000001") == 10**12
    assert fit_to_wei(Decimal("12.3456789")) == 12345679 * 10**12


def test_claim_id_hash_is_keccak_of_text():
    assert claim_id_hash("abc") == keccak(b"abc")


def test_signature_recovers_to_signer():
    cfg = _cfg()
    auth = sign_claim(cfg, WALLET, "claim-1", Decimal("25"), NOW_TS, nonce=7)

    assert auth.deadline == NOW_TS + 600
    assert auth.nonce == 7
    assert auth.amount_wei == 25 * 10**18
    assert auth.claim_id_hash == "0x" + keccak(text="claim-1").hex()
    assert _recover(cfg, WALLET, auth) == Account.from_key(SIGNER_KEY).address


def test_signature_is_bound_to_chain():
    auth = sign_claim(_cfg(chain_id=84532), WALLET, "claim-1", Decimal("25"), NOW_TS, nonce=0)
    assert _recover(_cfg(chain_id=1), WALLET, auth) != Account.from_key(SIGNER_KEY).address


def test_authorization_serializes_big_ints_as_strings():
    auth = sign_claim(_cfg(), WALLET, "claim-1", Decimal("25"), NOW_TS, nonce=3)
    body = auth.to_dict()
    assert body["amountWei"] == str(25 * 10**18)
    assert body["nonce"] == "3"
    assert body["deadline"] == NOW_TS + 600
    assert body["signature"].startswith("0x")
    assert len(body["signature"]) == 2 + 65 * 2


def test_config_requires_contract_and_key():
    with pytest.raises(SignerConfigError):
        SignerConfig.from_config({"SIGNER_PRIVATE_KEY": SIGNER_KEY})
    with pytest.raises(SignerConfigError):
        SignerConfig.from_config({"FITREWARDS_CLAIM_ADDRESS": CLAIM_CONTRACT})

    cfg = SignerConfig.from_config({
        "FITREWARDS_CLAIM_ADDRESS": CLAIM_CONTRACT.lower(),
        "SIGNER_PRIVATE_KEY": SIGNER_KEY[2:],
    })
    assert cfg.private_key == SIGNER_KEY
    assert cfg.contract_address == CLAIM_CONTRACT
    assert cfg.chain_id == 84532


@pytest.fixture
def pending(user, make_activity):
    make_activity(user, 1500)
    return prepare_claim(user, FIXED_NOW)


def test_authorize_pending_claim(user, pending):
    reader = mock.Mock(return_value=4)
    auth = authorize_claim(user, WALLET, pending.claim_id, NOW_TS, nonce_reader=reader)

    reader.assert_called_once()
    assert reader.call_args.args[2] == to_checksum_address(WALLET)
    assert auth.nonce == 4
    assert auth.amount_wei == 25 * 10**18
    assert auth.claim_id_hash == "0x" + keccak(text=pending.claim_id).hex()


def test_authorize_rejects_confirmed_claim(user, pending):
    confirm_inapp(user, pending.claim_id, FIXED_NOW)
    with pytest.raises(ClaimStateConflict):
        authorize_claim(user, WALLET, pending.claim_id, NOW_TS, nonce_reader=mock.Mock(return_value=0))


def test_authorize_rejects_other_wallet(user, other_user, pending):
    with pytest.raises(ClaimNotFound):
        authorize_claim(other_user, other_user.wallet, pending.claim_id, NOW_TS, nonce_reader=mock.Mock())
    with pytest.raises(ClaimStateConflict):
        authorize_claim(user, other_user.wallet, pending.claim_id, NOW_TS, nonce_reader=mock.Mock())
    with pytest.raises(ClaimValidationError):
        authorize_claim(user, "0x1234", pending.claim_id, NOW_TS, nonce_reader=mock.Mock())


def test_nonce_read_failure_is_retryable(user, pending):
    reader = mock.Mock(side_effect=ChainRPCError("eth_call failed: timed out"))
    with pytest.raises(ClaimDependencyError) as exc:
        authorize_claim(user, WALLET, pending.claim_id, NOW_TS, nonce_reader=reader)
    assert exc.value.retryable
    assert exc.value.http_status == 503


def test_read_claim_nonce_calls_nonces_selector():
    with mock.patch.object(chain_rpc, "rpc_post", return_value="0x" + "0" * 62 + "2a") as rpc:
        nonce = chain_rpc.read_claim_nonce("http://rpc.invalid", CLAIM_CONTRACT, WALLET, timeout=3)

    assert nonce == 42
    url, method, params = rpc.call_args.args
    assert method == "eth_call"
    call = params[0]
    assert call["to"] == CLAIM_CONTRACT
    # nonces(address) selector + left-padded address
    assert call["data"] == "0x7ecebe00" + "0" * 24 + WALLET[2:]
    assert params[1] == "latest"
    assert rpc.call_args.kwargs["timeout"] == 3


def test_hex_to_int():
    assert chain_rpc.hex_to_int("0x") == 0
    assert chain_rpc.hex_to_int(None) == 0
    assert chain_rpc.hex_to_int("0x10") == 16


def test_signature_matches_hand_built_eip712_digest():
    auth = sign_claim(_cfg(), WALLET, "claim-1", Decimal("25"), NOW_TS, nonce=7)

    domain_separator = keccak(abi_encode(
        ["bytes32", "bytes32", "bytes32", "uint256", "address"],
        [DOMAIN_TYPEHASH, keccak(text="FitRewards"), keccak(text="1"), 84532, CLAIM_CONTRACT],
    ))
    struct_hash = keccak(abi_encode(
        ["bytes32", "address", "uint256", "bytes32", "uint256", "uint256"],
        [CLAIM_TYPEHASH, to_checksum_address(WALLET), 25 * 10**18, keccak(text="claim-1"), 7, NOW_TS + 600],
    ))
    digest = keccak(b"\x19\x01" + domain_separator + struct_hash)

    assert Account._recover_hash(digest, signature=auth.signature) == Account.from_key(SIGNER_KEY).address


def test_nonce_read_rejects_empty_result():
    # "0x" is what eth_call returns for an address with no contract code.
    with mock.patch.object(chain_rpc, "rpc_post", return_value="0x"):
        with pytest.raises(ChainRPCError):
            chain_rpc.read_claim_nonce("http://rpc.invalid", CLAIM_CONTRACT, WALLET)
    with mock.patch.object(chain_rpc, "rpc_post", return_value=None):
        with pytest.raises(ChainRPCError):
            chain_rpc.read_claim_nonce("http://rpc.invalid", CLAIM_CONTRACT, WALLET)


def test_nonce_read_rejects_non_hex_result():
    with mock.patch.object(chain_rpc, "rpc_post", return_value="0xnothex"):
        with pytest.raises(ChainRPCError):
            chain_rpc.read_claim_nonce("http://rpc.invalid", CLAIM_CONTRACT, WALLET)
    with pytest.raises(ChainRPCError):
        chain_rpc.hex_to_int("garbage")


def test_bad_nonce_result_is_retryable_on_authorize(user, pending):
    with mock.patch.object(chain_rpc, "rpc_post", return_value="0x"):
        with pytest.raises(ClaimDependencyError) as exc:
            authorize_claim(user, WALLET, pending.claim_id, NOW_TS, nonce_reader=chain_rpc.read_claim_nonce)
    assert exc.value.retryable
