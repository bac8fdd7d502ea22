import asyncio
import json
import sqlite3
import tempfile
import unittest
from datetime import datetime
from pathlib import Path

import httpx

from coinflip.config import AppConfig
from coinflip.core.exceptions import StoreConflictError, StoreError
from coinflip.core.models import ResolvingRound, round_to_dict, transition
from coinflip.core.store import (
    JsonFileRoundStore,
    SqliteRoundStore,
    SupabaseRoundStore,
    create_round_store,
)
from tests.support import (
    OTHER_PLAYER,
    PLAYER,
    FakePostgrest,
    make_completed_round,
    make_round,
    supabase_store,
)


class RoundStoreContract:
    """Behaviour every backend shares; mixed into a concrete TestCase."""

    def make_store(self, directory: Path):
        raise NotImplementedError

    async def asyncSetUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.store = self.make_store(Path(self._tmp.name))

    async def asyncTearDown(self):
        await self.store.close()
        self._tmp.cleanup()

    async def test_create_and_get(self):
        round_ = make_round("r1")
        await self.store.create(round_)
        stored = await self.store.get("r1")
        self.assertEqual(stored.id, "r1")
        self.assertEqual(stored.payment.expected_data, round_.payment.expected_data)
        self.assertIsNone(await self.store.get("missing"))

    async def test_second_active_round_for_player_is_rejected(self):
        await self.store.create(make_round("r1"))
        with self.assertRaises(StoreConflictError):
            await self.store.create(make_round("r2", player=PLAYER.upper().replace("0X", "0x")))
        await self.store.create(make_round("r3", player=OTHER_PLAYER))

    async def test_completed_rounds_do_not_block_new_ones(self):
        await self.store.create(make_completed_round("r1", age_seconds=10))
        await self.store.create(make_round("r2"))
        active = await self.store.find_active_by_player(PLAYER)
        self.assertEqual(active.id, "r2")

    async def test_list_is_newest_first_and_limited(self):
        await self.store.create(make_completed_round("old", age_seconds=30))
        await self.store.create(make_completed_round("mid", age_seconds=20))
        await self.store.create(make_round("new", age_seconds=0))
        self.assertEqual([r.id for r in await self.store.list(40)], ["new", "mid", "old"])
        self.assertEqual([r.id for r in await self.store.list(2)], ["new", "mid"])

    async def test_compare_and_swap_only_applies_when_predicate_holds(self):
        await self.store.create(make_round("r1"))

        def claim(token):
            return lambda r: transition(r, ResolvingRound, processing_token=token)

        first = await self.store.compare_and_swap("r1", lambda r: r.status == "awaiting_payment", claim("a"))
        second = await self.store.compare_and_swap("r1", lambda r: r.status == "awaiting_payment", claim("b"))

        self.assertTrue(first.swapped)
        self.assertFalse(second.swapped)
        self.assertEqual(second.round.processing_token, "a")
        self.assertEqual((await self.store.get("r1")).processing_token, "a")

    async def test_update_advances_updated_at(self):
        round_ = make_round("r1", age_seconds=60)
        await self.store.create(round_)
        updated = await self.store.update("r1", lambda r: transition(r, ResolvingRound, processing_token="t"))
        self.assertGreater(updated.updated_at, round_.updated_at)
        self.assertEqual(updated.created_at, round_.created_at)

    async def test_unknown_round_swap_returns_none(self):
        result = await self.store.compare_and_swap("nope", lambda r: True, lambda r: r)
        self.assertIsNone(result.round)
        self.assertFalse(result.swapped)


class TestSqliteRoundStore(RoundStoreContract, unittest.IsolatedAsyncioTestCase):
    def make_store(self, directory):
        return SqliteRoundStore(directory / "solo.db")

    async def test_concurrent_claims_have_one_winner(self):
        await self.store.create(make_round("r1"))
        results = await asyncio.gather(
            *[
                self.store.compare_and_swap(
                    "r1",
                    lambda r: r.status == "awaiting_payment",
                    lambda r, token=token: transition(r, ResolvingRound, processing_token=token),
                )
                for token in ("a", "b", "c")
            ]
        )
        self.assertEqual(sum(1 for r in results if r.swapped), 1)

    async def test_write_waiting_on_another_process_leaves_the_loop_free(self):
        await self.store.create(make_round("r1"))
        blocker = sqlite3.connect(str(self.store.db_path), isolation_level=None)
        blocker.execute("BEGIN IMMEDIATE")
        try:
            pending = asyncio.create_task(
                self.store.update("r1", lambda r: transition(r, ResolvingRound, processing_token="t"))
            )
            await asyncio.sleep(0.1)
            self.assertFalse(pending.done())
            # WAL readers are not blocked by the pending writer
            self.assertEqual((await asyncio.wait_for(self.store.get("r1"), timeout=1)).status, "awaiting_payment")
        finally:
            blocker.execute("COMMIT")
            blocker.close()

        updated = await asyncio.wait_for(pending, timeout=5)
        self.assertEqual(updated.processing_token, "t")


class TestJsonFileRoundStore(RoundStoreContract, unittest.IsolatedAsyncioTestCase):
    def make_store(self, directory):
        return JsonFileRoundStore(directory / "rounds.json")

    async def test_document_is_a_camel_case_array(self):
        await self.store.create(make_round("r1"))
        document = json.loads(self.store.path.read_text())
        self.assertIsInstance(document, list)
        self.assertEqual(document[0]["playerAddress"], PLAYER)
        self.assertEqual(document[0]["payment"]["amountCRC"], "1")


class TestSupabaseRoundStore(RoundStoreContract, unittest.IsolatedAsyncioTestCase):
    def make_store(self, directory):
        self.backend = FakePostgrest()
        return supabase_store(self.backend)

    async def test_update_patches_only_the_version_it_read(self):
        round_ = make_round("r1", age_seconds=60)
        await self.store.create(round_)
        await self.store.update("r1", lambda r: transition(r, ResolvingRound, processing_token="t"))

        method, params = self.backend.requests[-1]
        self.assertEqual(method, "PATCH")
        self.assertEqual(params["id"], "eq.r1")
        self.assertEqual(
            datetime.fromisoformat(params["updated_at"].partition(".")[2]), round_.updated_at
        )

    async def test_claims_from_separate_instances_have_one_winner(self):
        await self.store.create(make_round("r1"))
        self.backend.gate_reads = 3
        others = [supabase_store(self.backend) for _ in range(2)]
        try:
            results = await asyncio.wait_for(
                asyncio.gather(
                    *[
                        store.compare_and_swap(
                            "r1",
                            lambda r: r.status == "awaiting_payment",
                            lambda r, token=token: transition(r, ResolvingRound, processing_token=token),
                        )
                        for store, token in zip([self.store] + others, ("a", "b", "c"))
                    ]
                ),
                timeout=5,
            )
        finally:
            for store in others:
                await store.close()

        winners = [r for r in results if r.swapped]
        self.assertEqual(len(winners), 1)
        stored = await self.store.get("r1")
        self.assertEqual(stored.processing_token, winners[0].round.processing_token)
        for result in results:
            self.assertEqual(result.round.processing_token, stored.processing_token)

    async def test_rows_carry_round_document_and_index_columns(self):
        round_ = make_round("r1")
        await self.store.create(round_)
        row = self.backend.rows["r1"]
        self.assertEqual(row["player_key"], PLAYER.lower())
        self.assertEqual(row["status"], "awaiting_payment")
        self.assertEqual(row["round"], round_to_dict(round_))

    async def test_server_error_raises_store_error(self):
        def failing(request):
            return httpx.Response(500, json={"message": "db down"})

        store = SupabaseRoundStore(
            "https://project.supabase.co",
            "service-key",
            client=httpx.AsyncClient(base_url="https://x/rest/v1", transport=httpx.MockTransport(failing)),
        )
        with self.assertRaises(StoreError) as ctx:
            await store.get("r1")
        self.assertIn("db down", str(ctx.exception))
        await store.close()


class TestCreateRoundStore(unittest.TestCase):
    def test_backends_by_name(self):
        with tempfile.TemporaryDirectory() as tmp:
            config = AppConfig()
            config.paths.database = str(Path(tmp) / "solo.db")
            config.paths.rounds_file = str(Path(tmp) / "rounds.json")

            self.assertIsInstance(create_round_store(config), SqliteRoundStore)

            config.storage.backend = "file"
            self.assertIsInstance(create_round_store(config), JsonFileRoundStore)

            config.storage.backend = "supabase"
            with self.assertRaises(StoreError):
                create_round_store(config)

            config.storage.backend = "mongo"
            with self.assertRaises(StoreError):
                create_round_store(config)


if __name__ == "__main__":
    unittest.main()
