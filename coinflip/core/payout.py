"""
Winner payouts.

Pays the round's payout amount from the org avatar to the winner through the
Circles Hub, along a pathfinder route unless a fixed payout token is
configured. When the signing key is the org avatar itself the Hub calls are
sent directly; otherwise the org avatar is a Safe and each call is wrapped in
execTransaction, simulated with eth_call, and only then sent.

`PayoutExecutor.pay` never raises. Every failure ends up in the returned
payout record.
"""

import asyncio
import re
from typing import Any, List, Optional, Tuple

from eth_account import Account
from web3 import Web3

from coinflip.core.amounts import to_base_units
from coinflip.core.circles import CirclesRpc
from coinflip.core.exceptions import PayoutError
from coinflip.core.hub import create_flow_matrix, hub_contract, token_id_for
from coinflip.core.logger import get_logger
from coinflip.core.models import Payout, utc_now

logger = get_logger("payout")

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
PRIVATE_KEY_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")

# (Hub function name, positional args)
HubCall = Tuple[str, List[Any]]

SAFE_TX_PARAMS = [
    {"name": "to", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "data", "type": "bytes"},
    {"name": "operation", "type": "uint8"},
    {"name": "safeTxGas", "type": "uint256"},
    {"name": "baseGas", "type": "uint256"},
    {"name": "gasPrice", "type": "uint256"},
    {"name": "gasToken", "type": "address"},
    {"name": "refundReceiver", "type": "address"},
]

SAFE_ABI = [
    {
        "type": "function",
        "name": "nonce",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "getTransactionHash",
        "stateMutability": "view",
        "inputs": SAFE_TX_PARAMS + [{"name": "_nonce", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bytes32"}],
    },
    {
        "type": "function",
        "name": "execTransaction",
        "stateMutability": "payable",
        "inputs": SAFE_TX_PARAMS + [{"name": "signatures", "type": "bytes"}],
        "outputs": [{"name": "success", "type": "bool"}],
    },
]


def normalize_private_key(raw_key: str) -> str:
    candidate = raw_key.strip()
    if not candidate.startswith("0x"):
        candidate = f"0x{candidate}"
    if not PRIVATE_KEY_PATTERN.match(candidate):
        raise PayoutError("CIRCLES_ORG_PRIVATE_KEY must be a 32-byte hex string")
    return candidate


def normalize_signature_v(signature: bytes) -> bytes:
    """Safe expects v in {27, 28} for EOA signatures."""
    if len(signature) != 65:
        raise PayoutError(f"Unexpected signature length: {len(signature)}")
    v = signature[-1]
    return bytes(signature[:-1]) + bytes([v if v >= 27 else v + 27])


class PayoutExecutor:
    def __init__(self, circles_config, rpc: CirclesRpc):
        self.config = circles_config
        self.rpc = rpc

    def is_configured(self) -> bool:
        return bool(self.config.org_avatar_address and self.config.org_private_key)

    async def pay(self, round_id: str, winner_address: str, amount_crc: str) -> Payout:
        org_address = (self.config.org_avatar_address or "").strip()
        private_key = (self.config.org_private_key or "").strip()

        def record(status: str, tx_hash: Optional[str] = None, error: Optional[str] = None) -> Payout:
            return Payout(
                status=status,
                from_address=org_address or "not-configured",
                to_address=winner_address,
                amount_crc=amount_crc,
                tx_hash=tx_hash,
                error=error,
                processed_at=utc_now(),
            )

        if not org_address or not private_key:
            return record("skipped", error="Missing CIRCLES_ORG_AVATAR_ADDRESS or CIRCLES_ORG_PRIVATE_KEY")
        if not Web3.is_address(org_address):
            return record("failed", error="CIRCLES_ORG_AVATAR_ADDRESS is invalid")
        if not Web3.is_address(winner_address):
            return record("failed", error="Winner address is invalid")

        try:
            amount_atto = to_base_units(amount_crc, "payout amount")
            calls = await self._payout_calls(round_id, org_address, winner_address, amount_atto)
            tx_hash = await asyncio.to_thread(self._submit, org_address, private_key, calls)
        except Exception as e:
            logger.error(f"Payout for round {round_id} failed: {e}")
            return record("failed", error=str(e) or "Unknown payout failure")

        logger.info(f"Paid {amount_crc} CRC to {winner_address} for round {round_id} (tx {tx_hash})")
        return record("paid", tx_hash=tx_hash)

    async def _payout_calls(
        self, round_id: str, org_address: str, winner_address: str, amount_atto: int
    ) -> List[HubCall]:
        """
        Hub calls that pay the winner, in order.

        An explicitly configured payout token is sent with a plain
        `safeTransferFrom`. Otherwise the pathfinder routes the amount from the
        org avatar's holdings and the route is settled with `operateFlowMatrix`.
        """
        org = Web3.to_checksum_address(org_address)
        winner = Web3.to_checksum_address(winner_address)
        data = f"solo:{round_id}:winner".encode("utf-8")

        if self.config.payout_token_address:
            token_id = token_id_for(self.config.payout_token_address)
            return [("safeTransferFrom", [org, winner, token_id, amount_atto, data])]

        path = await self.rpc.find_path(org, winner, amount_atto)
        if path.max_flow < amount_atto:
            raise PayoutError(
                f"Org avatar can route at most {path.max_flow} atto-CRC to the winner, "
                f"needs {amount_atto}"
            )
        matrix = create_flow_matrix(org, winner, amount_atto, path.transfers, data)

        calls: List[HubCall] = []
        if not await self.rpc.is_approved_for_all(self.config.hub_address, org, org):
            calls.append(("setApprovalForAll", [org, True]))
        calls.append(("operateFlowMatrix", matrix.as_args()))
        return calls

    # ==================== Chain submission (blocking) ====================

    def _web3(self) -> Web3:
        return Web3(Web3.HTTPProvider(self.config.get_chain_rpc_url()))

    def _submit(self, org_address: str, private_key: str, calls: List[HubCall]) -> str:
        """Send each Hub call from the org avatar and wait for it; returns the last tx hash."""
        account = Account.from_key(normalize_private_key(private_key))
        w3 = self._web3()
        org = Web3.to_checksum_address(org_address)
        hub = hub_contract(self.config.hub_address, w3)

        tx_hash = None
        for name, args in calls:
            if account.address.lower() == org.lower():
                tx_hash = self._send(w3, account, getattr(hub.functions, name)(*args))
            else:
                calldata = hub.encode_abi(name, args=args)
                tx_hash = self._send_via_safe(w3, account, org, hub.address, calldata)

            receipt = w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.config.receipt_timeout_seconds
            )
            if receipt["status"] != 1:
                raise PayoutError(f"Payout transaction reverted: {tx_hash} ({name})")
        return tx_hash

    def _send(self, w3: Web3, account, contract_fn) -> str:
        tx = contract_fn.build_transaction(
            {
                "from": account.address,
                "nonce": w3.eth.get_transaction_count(account.address, "pending"),
                "chainId": self.config.chain_id,
            }
        )
        signed = account.sign_transaction(tx)
        return Web3.to_hex(w3.eth.send_raw_transaction(signed.raw_transaction))

    def _send_via_safe(self, w3: Web3, account, safe_address: str, target: str, calldata: str) -> str:
        safe = w3.eth.contract(address=safe_address, abi=SAFE_ABI)
        safe_args = [target, 0, Web3.to_bytes(hexstr=calldata), 0, 0, 0, 0, ZERO_ADDRESS, ZERO_ADDRESS]

        nonce = safe.functions.nonce().call()
        safe_hash = safe.functions.getTransactionHash(*safe_args, nonce).call()
        signed = account.unsafe_sign_hash(safe_hash)
        signature = normalize_signature_v(bytes(signed.signature))

        exec_tx = safe.functions.execTransaction(*safe_args, signature)
        if not exec_tx.call({"from": account.address}):
            raise PayoutError("Safe exec simulation failed for payout transaction")

        return self._send(w3, account, exec_tx)
