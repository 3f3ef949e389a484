# -------------------------------
# Minimal JSON-RPC helper (no web3.py)
# -------------------------------
import json
from urllib import request as urlrequest
from urllib.error import URLError

from eth_abi import encode as abi_encode
from eth_utils import function_signature_to_4byte_selector, to_checksum_address


NONCES_SELECTOR = function_signature_to_4byte_selector("nonces(address)")


class ChainRPCError(Exception):
    """RPC unreachable, timed out, or returned an error. Safe to retry."""


def rpc_post(url: str, method: str, params=None, timeout=12):
    params = params or []
    payload = json.dumps({"jsonrpc": "2.0", "id": 1, "method": method, "params": params}).encode("utf-8")
    req = urlrequest.Request(url, data=payload, headers={"Content-Type": "application/json"})
    try:
        with urlrequest.urlopen(req, timeout=timeout) as resp:
            data = json.loads(resp.read().decode("utf-8"))
    except (URLError, TimeoutError, OSError, ValueError) as e:
        raise ChainRPCError(f"{method} failed: {e}") from e
    if "error" in data:
        raise ChainRPCError(f"{method} error: {data['error']}")
    return data.get("result")


def hex_to_int(x):
    if x is None or x in ("0x", ""):
        return 0
    try:
        return int(x, 16)
    except (TypeError, ValueError) as e:
        raise ChainRPCError(f"not a hex quantity: {x!r}") from e


def read_claim_nonce(rpc_url: str, contract_address: str, wallet: str, timeout=12) -> int:
    """Current replay-guard nonce for `wallet` from the claim contract's nonces(address)."""
    call_data = NONCES_SELECTOR + abi_encode(["address"], [to_checksum_address(wallet)])
    result = rpc_post(
        rpc_url,
        "eth_call",
        [{"to": to_checksum_address(contract_address), "data": "0x" + call_data.hex()}, "latest"],
        timeout=timeout,
    )
    # Empty return data means no contract code at that address.
    if not result or result == "0x":
        raise ChainRPCError(f"nonces() returned no data from {contract_address}")
    return hex_to_int(result)
