import unittest

from coinflip.core.hub import PathTransfer, create_flow_matrix, token_id_for
from tests.support import ORG, OTHER_PLAYER, PLAYER

# Sorted by numeric value: PLAYER (0x11..) < ORG (0x22..) < OTHER_PLAYER (0x33..)


class TestFlowMatrix(unittest.TestCase):
    def test_direct_hop(self):
        matrix = create_flow_matrix(PLAYER, ORG, 5, [PathTransfer(PLAYER, ORG, PLAYER, 5)], b"m")

        self.assertEqual(matrix.flow_vertices, [PLAYER, ORG])
        self.assertEqual(matrix.flow_edges, [(1, 5)])
        self.assertEqual(matrix.streams, [(0, [0], b"m")])
        # token owner, from, to as big-endian uint16 indices
        self.assertEqual(matrix.packed_coordinates, bytes([0, 0, 0, 0, 0, 1]))

    def test_multi_hop_route_marks_only_edges_into_the_sink(self):
        transfers = [
            PathTransfer(ORG, OTHER_PLAYER, ORG, 7),
            PathTransfer(OTHER_PLAYER, PLAYER, OTHER_PLAYER, 7),
            PathTransfer(ORG, PLAYER, ORG, 3),
        ]
        matrix = create_flow_matrix(ORG.upper().replace("0X", "0x"), PLAYER, 10, transfers, b"")

        self.assertEqual(matrix.flow_vertices, [PLAYER, ORG, OTHER_PLAYER])
        self.assertEqual(matrix.flow_edges, [(0, 7), (1, 7), (1, 3)])
        self.assertEqual(matrix.streams, [(1, [1, 2], b"")])
        self.assertEqual(
            matrix.packed_coordinates,
            bytes([0, 1, 0, 1, 0, 2, 0, 2, 0, 2, 0, 0, 0, 1, 0, 1, 0, 0]),
        )

    def test_checksummed_vertices_in_call_arguments(self):
        matrix = create_flow_matrix(PLAYER, ORG, 1, [PathTransfer(PLAYER, ORG, PLAYER, 1)])
        vertices = matrix.as_args()[0]
        self.assertEqual([v.lower() for v in vertices], [PLAYER, ORG])

    def test_route_must_deliver_exactly_the_amount(self):
        with self.assertRaises(ValueError):
            create_flow_matrix(PLAYER, ORG, 5, [PathTransfer(PLAYER, ORG, PLAYER, 4)])
        with self.assertRaises(ValueError):
            create_flow_matrix(PLAYER, ORG, 5, [PathTransfer(PLAYER, OTHER_PLAYER, PLAYER, 5)])
        with self.assertRaises(ValueError):
            create_flow_matrix(PLAYER, ORG, 5, [])

    def test_token_id_is_avatar_address(self):
        self.assertEqual(token_id_for(PLAYER), int(PLAYER, 16))


if __name__ == "__main__":
    unittest.main()
