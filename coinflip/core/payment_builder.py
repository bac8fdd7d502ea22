"""
Entry-fee transaction construction.

Asks the pathfinder for a route that moves the entry fee from the player to
the org avatar and encodes it as a Hub `operateFlowMatrix` call with the round
marker as stream data, so any CRC the player can route through trust is
accepted, not only their own token. A `setApprovalForAll` call goes first
when the player has not yet made themselves their own Hub operator.

Two encodings of the same transactions are returned because mini-app SDKs
want the value as a decimal string while wallet hosts want hex.
"""

from dataclasses import dataclass, field
from typing import List

from web3 import Web3

from coinflip.core.circles import CirclesRpc
from coinflip.core.hub import create_flow_matrix, encode_flow_matrix, encode_self_approval
from coinflip.core.models import MiniappHostTransaction, MiniappTransaction


@dataclass
class PaymentDraft:
    transactions: List[MiniappTransaction] = field(default_factory=list)
    host_transactions: List[MiniappHostTransaction] = field(default_factory=list)


class PaymentBuilder:
    def __init__(self, hub_address: str, rpc: CirclesRpc):
        self.hub_address = Web3.to_checksum_address(hub_address)
        self.rpc = rpc

    async def build(
        self, player_address: str, recipient_address: str, amount_atto: int, expected_data: str
    ) -> PaymentDraft:
        if amount_atto <= 0:
            raise ValueError("Payment amount must be greater than 0")

        path = await self.rpc.find_path(player_address, recipient_address, amount_atto)
        if path.max_flow < amount_atto:
            raise ValueError(
                f"No transfer path can move {amount_atto} atto-CRC from {player_address} "
                f"(max {path.max_flow})"
            )
        matrix = create_flow_matrix(
            player_address, recipient_address, amount_atto, path.transfers, expected_data.encode("utf-8")
        )

        calls = []
        if not await self.rpc.is_approved_for_all(self.hub_address, player_address, player_address):
            calls.append(encode_self_approval(self.hub_address, player_address))
        calls.append(encode_flow_matrix(self.hub_address, matrix))

        native_value = 0
        return PaymentDraft(
            transactions=[
                MiniappTransaction(to=self.hub_address, data=data, value=str(native_value))
                for data in calls
            ],
            host_transactions=[
                MiniappHostTransaction(to=self.hub_address, data=data, value=hex(native_value))
                for data in calls
            ],
        )
