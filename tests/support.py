"""
Shared fixtures for the coinflip test suite: addresses, fake collaborators, an
in-memory PostgREST backend and round builders.
"""

import asyncio
import itertools
import json
from datetime import datetime, timedelta
from typing import List, Optional
from urllib.parse import parse_qs

import httpx
from web3 import Web3

from coinflip.config import AppConfig
from coinflip.core.circles import TransferPath
from coinflip.core.hub import PathTransfer
from coinflip.core.matching import TransferEvent
from coinflip.core.models import (
    AwaitingPaymentRound,
    CompletedRound,
    Payment,
    Payout,
    RoundResult,
    utc_now,
)
from coinflip.core.payment_builder import PaymentBuilder
from coinflip.core.solo import SoloGameService, build_move_data
from coinflip.core.store import SqliteRoundStore, SupabaseRoundStore

PLAYER = "0x1111111111111111111111111111111111111111"
OTHER_PLAYER = "0x3333333333333333333333333333333333333333"
ORG = "0x2222222222222222222222222222222222222222"
TX_HASH = "0x" + "ab" * 32

OPERATE_FLOW_MATRIX_SELECTOR = Web3.to_hex(
    Web3.keccak(text="operateFlowMatrix(address[],(uint16,uint192)[],(uint16,uint16[],bytes)[],bytes)")[:4]
)


def make_config(**solo_overrides) -> AppConfig:
    config = AppConfig()
    config.circles.org_avatar_address = ORG
    config.circles.org_private_key = "0x" + "01" * 32
    for key, value in solo_overrides.items():
        setattr(config.solo, key, value)
    return config


class ScriptedRng:
    """Deterministic stand-in for TrueRNG: rolls come from `rolls`, tokens count up."""

    def __init__(self, rolls: Optional[List[int]] = None, default_roll: int = 0):
        self.rolls = list(rolls or [])
        self.default_roll = default_roll
        self._tokens = itertools.count(1)

    def random_int(self, min_val: int, max_val: int) -> int:
        return self.rolls.pop(0) if self.rolls else self.default_roll

    def token(self) -> str:
        return f"claim-{next(self._tokens)}"


class FakeRpc:
    def __init__(self):
        self.avatars = {PLAYER.lower(): {"avatar": PLAYER}, ORG.lower(): {"avatar": ORG}}
        self.max_flow = 10 ** 21
        self.self_approved = True
        self.balance = 5 * 10 ** 18
        self.error: Optional[Exception] = None
        self.calls = []
        self.closed = False

    async def get_avatar_info(self, address):
        self.calls.append(("get_avatar_info", address))
        if self.error:
            raise self.error
        return self.avatars.get(address.lower())

    async def find_max_flow(self, source, sink):
        self.calls.append(("find_max_flow", source, sink))
        if self.error:
            raise self.error
        return self.max_flow

    async def find_path(self, source, sink, target_flow):
        """A single direct hop of the source's own token, capped at `max_flow`."""
        self.calls.append(("find_path", source, sink, target_flow))
        if self.error:
            raise self.error
        flow = min(target_flow, self.max_flow)
        transfers = [PathTransfer(source.lower(), sink.lower(), source.lower(), flow)] if flow else []
        return TransferPath(max_flow=flow, transfers=transfers)

    async def is_approved_for_all(self, hub_address, account, operator):
        self.calls.append(("is_approved_for_all", account, operator))
        return self.self_approved

    async def get_total_balance(self, address):
        if self.error:
            raise self.error
        return self.balance

    async def aclose(self):
        self.closed = True


class FakeLocator:
    """Reports `payment` for every lookup once it is set."""

    def __init__(self):
        self.payment: Optional[TransferEvent] = None
        self.calls = 0

    def pay(self, round_, tx_hash: str = TX_HASH):
        self.payment = TransferEvent(
            transaction_hash=tx_hash,
            from_address=round_.player_address,
            to_address=round_.payment.recipient_address,
            data=round_.payment.expected_data,
        )

    async def locate(self, expected_data, min_amount_atto, recipient, player, created_at):
        self.calls += 1
        return self.payment


class FakePayoutExecutor:
    def __init__(self, status: str = "paid", error: Optional[str] = None, on_pay=None):
        self.status = status
        self.error = error
        self.on_pay = on_pay
        self.calls = []

    def is_configured(self) -> bool:
        return True

    async def pay(self, round_id, winner_address, amount_crc) -> Payout:
        self.calls.append((round_id, winner_address, amount_crc))
        if self.on_pay:
            await self.on_pay(round_id)
        return Payout(
            status=self.status,
            from_address=ORG,
            to_address=winner_address,
            amount_crc=amount_crc,
            tx_hash="0x" + "cd" * 32 if self.status == "paid" else None,
            error=self.error,
            processed_at=utc_now(),
        )


def make_service(db_path, config=None, rng=None, payout_executor=None, store=None):
    config = config or make_config()
    rpc = FakeRpc()
    return SoloGameService(
        config=config,
        store=store or SqliteRoundStore(db_path),
        rpc=rpc,
        locator=FakeLocator(),
        payout_executor=payout_executor or FakePayoutExecutor(),
        payment_builder=PaymentBuilder(config.circles.hub_address, rpc),
        rng=rng or ScriptedRng(),
    )


def make_round(round_id: str = "round-1", player: str = PLAYER, move: str = "heads", age_seconds: int = 0):
    created = utc_now() - timedelta(seconds=age_seconds)
    expected = build_move_data(round_id, move, player)
    return AwaitingPaymentRound(
        id=round_id,
        created_at=created,
        updated_at=created,
        player_address=player,
        move=move,
        payment=Payment(
            recipient_address=ORG,
            payment_link=f"https://app.gnosis.io/transfer/{ORG}/crc?data={expected}&amount=1",
            expected_data=expected,
            amount_crc="1",
        ),
        payout=Payout(from_address=ORG, to_address=player, amount_crc="2"),
    )


def make_completed_round(
    round_id: str = "round-1",
    player: str = PLAYER,
    outcome: str = "win",
    payout_status: str = "failed",
    payout_error: Optional[str] = None,
    retry_count: Optional[int] = None,
    tx_hash: Optional[str] = None,
    age_seconds: int = 0,
) -> CompletedRound:
    base = make_round(round_id, player, age_seconds=age_seconds)
    return CompletedRound(
        **base.model_dump(exclude={"status", "payout"}),
        result=RoundResult(
            coin="heads" if outcome == "win" else "tails", outcome=outcome, resolved_at=utc_now()
        ),
        payout=Payout(
            status=payout_status,
            from_address=ORG,
            to_address=player,
            amount_crc="2",
            error=payout_error,
            retry_count=retry_count,
            tx_hash=tx_hash,
        ),
    )


class FakePostgrest:
    """In-memory PostgREST table served through httpx.MockTransport."""

    def __init__(self):
        self.rows = {}
        self.requests = []
        # The next `gate_reads` GETs wait for each other, so concurrent callers all read one version
        self.gate_reads = 0
        self._gate = asyncio.Event()
        # Seconds every request takes, letting concurrent callers interleave
        self.delay = 0.0

    @staticmethod
    def _matches(key, stored, operand):
        if key == "updated_at":
            return datetime.fromisoformat(str(stored)) == datetime.fromisoformat(operand)
        return str(stored) == operand

    def _filter(self, params):
        rows = list(self.rows.values())
        for key, value in params.items():
            if key in ("select", "order", "limit"):
                continue
            op, _, operand = value.partition(".")
            if op == "eq":
                rows = [r for r in rows if self._matches(key, r[key], operand)]
            elif op == "neq":
                rows = [r for r in rows if not self._matches(key, r[key], operand)]
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        if "limit" in params:
            rows = rows[: int(params["limit"])]
        return rows

    async def _wait_for_readers(self):
        if self.gate_reads <= 0:
            return
        self.gate_reads -= 1
        if self.gate_reads == 0:
            self._gate.set()
        await self._gate.wait()

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        params = {k: v[0] for k, v in parse_qs(request.url.query.decode()).items()}
        self.requests.append((request.method, params))
        if self.delay:
            await asyncio.sleep(self.delay)
        if request.method == "POST":
            row = json.loads(request.content)
            conflict = any(
                r["player_key"] == row["player_key"] and r["status"] != "completed" for r in self.rows.values()
            )
            if conflict:
                return httpx.Response(409, json={"message": "duplicate key value violates unique constraint"})
            self.rows[row["id"]] = row
            return httpx.Response(201)
        if request.method == "GET":
            await self._wait_for_readers()
            return httpx.Response(200, json=[{"round": r["round"]} for r in self._filter(params)])
        if request.method == "PATCH":
            patch = json.loads(request.content)
            matched = self._filter(params)
            for row in matched:
                row.update(patch)
            return httpx.Response(200, json=[{"round": r["round"]} for r in matched])
        return httpx.Response(405)


def supabase_store(backend: FakePostgrest) -> SupabaseRoundStore:
    client = httpx.AsyncClient(
        base_url="https://project.supabase.co/rest/v1", transport=httpx.MockTransport(backend)
    )
    return SupabaseRoundStore("https://project.supabase.co", "service-key", client=client)


