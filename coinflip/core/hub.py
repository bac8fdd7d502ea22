"""
Circles v2 Hub calldata.

A pathfinder route is settled on the Hub with one `operateFlowMatrix` call:
the route's addresses become sorted flow vertices, every hop becomes a flow
edge plus a (token owner, from, to) coordinate triple, and a single stream
from the payer collects the edges that end at the recipient. The stream's
`data` is what the indexer later reports as transfer data.
"""

from dataclasses import dataclass
from typing import List, Sequence, Tuple

from web3 import Web3

HUB_ABI = [
    {
        "type": "function",
        "name": "safeTransferFrom",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "_from", "type": "address"},
            {"name": "_to", "type": "address"},
            {"name": "_id", "type": "uint256"},
            {"name": "_value", "type": "uint256"},
            {"name": "_data", "type": "bytes"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "operateFlowMatrix",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "_flowVertices", "type": "address[]"},
            {
                "name": "_flow",
                "type": "tuple[]",
                "components": [
                    {"name": "streamSinkId", "type": "uint16"},
                    {"name": "amount", "type": "uint192"},
                ],
            },
            {
                "name": "_streams",
                "type": "tuple[]",
                "components": [
                    {"name": "sourceCoordinate", "type": "uint16"},
                    {"name": "flowEdgeIds", "type": "uint16[]"},
                    {"name": "data", "type": "bytes"},
                ],
            },
            {"name": "_packedCoordinates", "type": "bytes"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "isApprovedForAll",
        "stateMutability": "view",
        "inputs": [
            {"name": "_account", "type": "address"},
            {"name": "_operator", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "function",
        "name": "setApprovalForAll",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "_operator", "type": "address"},
            {"name": "_approved", "type": "bool"},
        ],
        "outputs": [],
    },
]


def hub_contract(hub_address: str, w3: Web3 = None):
    return (w3 or Web3()).eth.contract(address=Web3.to_checksum_address(hub_address), abi=HUB_ABI)


@dataclass(frozen=True)
class PathTransfer:
    """One hop of a pathfinder route: `value` of `token_owner`'s CRC from `sender` to `receiver`."""

    sender: str
    receiver: str
    token_owner: str
    value: int


def token_id_for(avatar_address: str) -> int:
    """Circles v2 personal token id: the avatar address as uint256."""
    return int(Web3.to_checksum_address(avatar_address), 16)


@dataclass
class FlowMatrix:
    flow_vertices: List[str]
    flow_edges: List[Tuple[int, int]]
    streams: List[Tuple[int, List[int], bytes]]
    packed_coordinates: bytes

    def as_args(self) -> list:
        return [
            [Web3.to_checksum_address(v) for v in self.flow_vertices],
            self.flow_edges,
            self.streams,
            self.packed_coordinates,
        ]


def create_flow_matrix(
    source: str, sink: str, amount_atto: int, transfers: Sequence[PathTransfer], data: bytes = b""
) -> FlowMatrix:
    """
    Lay out `transfers` (one pathfinder route) as Hub flow-matrix arguments.

    Raises ValueError when the route is empty or the hops ending at `sink` do
    not add up to exactly `amount_atto`.
    """
    if not transfers:
        raise ValueError("Transfer path is empty")

    sender, receiver = source.lower(), sink.lower()
    addresses = {sender, receiver}
    for hop in transfers:
        addresses.update((hop.sender.lower(), hop.receiver.lower(), hop.token_owner.lower()))
    vertices = sorted(addresses, key=lambda address: int(address, 16))
    index = {address: i for i, address in enumerate(vertices)}

    flow_edges = []
    terminal_edges = []
    coordinates = bytearray()
    for edge_id, hop in enumerate(transfers):
        reaches_sink = hop.receiver.lower() == receiver
        if reaches_sink:
            terminal_edges.append(edge_id)
        flow_edges.append((1 if reaches_sink else 0, hop.value))
        for address in (hop.token_owner, hop.sender, hop.receiver):
            coordinates += index[address.lower()].to_bytes(2, "big")

    delivered = sum(transfers[i].value for i in terminal_edges)
    if delivered != amount_atto:
        raise ValueError(f"Transfer path delivers {delivered} to {sink}, expected {amount_atto}")

    return FlowMatrix(
        flow_vertices=vertices,
        flow_edges=flow_edges,
        streams=[(index[sender], terminal_edges, data)],
        packed_coordinates=bytes(coordinates),
    )


def encode_flow_matrix(hub_address: str, matrix: FlowMatrix) -> str:
    return hub_contract(hub_address).encode_abi("operateFlowMatrix", args=matrix.as_args())


def encode_self_approval(hub_address: str, avatar_address: str) -> str:
    """The Hub only lets an avatar operate its own flow once it is its own approved operator."""
    avatar = Web3.to_checksum_address(avatar_address)
    return hub_contract(hub_address).encode_abi("setApprovalForAll", args=[avatar, True])
