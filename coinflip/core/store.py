"""
Round persistence.

Three backends share one contract:
- SqliteRoundStore: default. A partial unique index keeps one active round per
  player, and updates run inside BEGIN IMMEDIATE so they are atomic across
  processes on the same host.
- JsonFileRoundStore: one JSON document, newest round first. Single process
  only.
- SupabaseRoundStore: PostgREST over httpx for multi-instance deployments.
  Uniqueness comes from a partial unique index in Postgres; updates are
  PATCHes conditional on the `updated_at` that was read, retried on conflict.

State-transition legality is not checked here. Callers pass a predicate to
`compare_and_swap` and the transform only runs when the predicate still holds
on the freshly read record.
"""

import asyncio
import os
import sqlite3
import tempfile
import threading
from abc import ABC, abstractmethod
from datetime import timedelta
from pathlib import Path
from typing import Callable, List, NamedTuple, Optional

import httpx
import orjson

from coinflip.core.exceptions import StoreConflictError, StoreError
from coinflip.core.logger import get_logger
from coinflip.core.models import Round, player_key, round_from_dict, round_to_dict, utc_now

logger = get_logger("store")

Updater = Callable[[Round], Round]
Predicate = Callable[[Round], bool]

UPDATE_ATTEMPTS = 5

SUPABASE_SCHEMA = """
create table if not exists solo_rounds (
    id text primary key,
    player_key text not null,
    status text not null,
    created_at timestamptz not null,
    updated_at timestamptz not null,
    round jsonb not null
);
create unique index if not exists solo_rounds_active_player
    on solo_rounds (player_key) where status <> 'completed';
create index if not exists solo_rounds_created_at on solo_rounds (created_at desc);
"""


class SwapResult(NamedTuple):
    round: Optional[Round]
    swapped: bool


def _touch(previous: Round, updated: Round) -> Round:
    """Stamp a changed record with an updatedAt strictly after the previous one."""
    if updated is previous or updated == previous:
        return previous
    stamp = utc_now()
    if stamp <= previous.updated_at:
        stamp = previous.updated_at + timedelta(microseconds=1)
    return updated.model_copy(update={"updated_at": stamp})


def _dumps(round_: Round) -> str:
    return orjson.dumps(round_to_dict(round_)).decode("utf-8")


def _timestamp_key(round_: Round) -> str:
    # Fixed width so text ordering equals time ordering
    return round_.created_at.isoformat(timespec="microseconds")


class RoundStore(ABC):
    """Persistence contract for solo rounds."""

    def __init__(self):
        self._write_lock = asyncio.Lock()

    @abstractmethod
    async def create(self, round_: Round) -> None:
        """Insert a new round; StoreConflictError if the player already has an active one."""

    @abstractmethod
    async def get(self, round_id: str) -> Optional[Round]:
        ...

    @abstractmethod
    async def list(self, limit: int = 40) -> List[Round]:
        """Rounds ordered newest-created first."""

    @abstractmethod
    async def find_active_by_player(self, player_address: str) -> Optional[Round]:
        ...

    @abstractmethod
    async def _read_modify_write(self, round_id: str, updater: Updater) -> Optional[Round]:
        ...

    async def update(self, round_id: str, updater: Updater) -> Optional[Round]:
        """Apply `updater` to the stored round and persist the result; None if unknown."""
        async with self._write_lock:
            return await self._read_modify_write(round_id, updater)

    async def compare_and_swap(
        self, round_id: str, expected: Predicate, transform: Updater
    ) -> SwapResult:
        swapped = False

        def apply(current: Round) -> Round:
            # Backends may call this again on a fresher record; only the last call counts
            nonlocal swapped
            swapped = expected(current)
            return transform(current) if swapped else current

        stored = await self.update(round_id, apply)
        return SwapResult(stored, swapped and stored is not None)

    async def close(self):
        pass


# ==================== SQLite ====================

class SqliteRoundStore(RoundStore):
    """
    SQLite on the local filesystem. Every statement runs in a worker thread
    through `asyncio.to_thread`, each thread on its own connection.
    """

    def __init__(self, db_path: Path):
        super().__init__()
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        logger.info(f"Initializing round store at {self.db_path}")
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "connection", None)
        if conn is None:
            conn = sqlite3.connect(
                str(self.db_path), check_same_thread=False, isolation_level=None, timeout=30
            )
            conn.row_factory = sqlite3.Row
            self._local.connection = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    def _init_db(self):
        cursor = self._get_connection().cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS solo_rounds (
                id TEXT PRIMARY KEY,
                player_key TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                round TEXT NOT NULL
            )
        """
        )
        # One non-completed round per player, enforced by the database itself
        cursor.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_solo_rounds_active_player
            ON solo_rounds (player_key) WHERE status != 'completed'
        """
        )
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_solo_rounds_created_at ON solo_rounds (created_at DESC)"
        )

    @staticmethod
    def _row_to_round(row) -> Round:
        return round_from_dict(orjson.loads(row["round"]))

    def _query(self, sql: str, params: tuple = ()) -> List[Round]:
        rows = self._get_connection().execute(sql, params).fetchall()
        return [self._row_to_round(row) for row in rows]

    def _insert(self, round_: Round):
        try:
            self._get_connection().execute(
                """
                INSERT INTO solo_rounds (id, player_key, status, created_at, updated_at, round)
                VALUES (?, ?, ?, ?, ?, ?)
            """,
                (
                    round_.id,
                    round_.player_key,
                    round_.status,
                    _timestamp_key(round_),
                    round_.updated_at.isoformat(timespec="microseconds"),
                    _dumps(round_),
                ),
            )
        except sqlite3.IntegrityError as e:
            if "player_key" in str(e):
                raise StoreConflictError(
                    f"Player {round_.player_key} already has an active round"
                ) from e
            raise StoreError(f"Could not insert round {round_.id}: {e}") from e

    def _update_in_transaction(self, round_id: str, updater: Updater) -> Optional[Round]:
        conn = self._get_connection()
        conn.execute("BEGIN IMMEDIATE")
        try:
            row = conn.execute(
                "SELECT round FROM solo_rounds WHERE id = ?", (round_id,)
            ).fetchone()
            if not row:
                conn.execute("COMMIT")
                return None

            current = self._row_to_round(row)
            updated = _touch(current, updater(current))
            if updated is not current:
                conn.execute(
                    "UPDATE solo_rounds SET status = ?, updated_at = ?, round = ? WHERE id = ?",
                    (
                        updated.status,
                        updated.updated_at.isoformat(timespec="microseconds"),
                        _dumps(updated),
                        round_id,
                    ),
                )
            conn.execute("COMMIT")
            return updated
        except Exception:
            conn.execute("ROLLBACK")
            raise

    async def create(self, round_: Round) -> None:
        async with self._write_lock:
            await asyncio.to_thread(self._insert, round_)

    async def get(self, round_id: str) -> Optional[Round]:
        rounds = await asyncio.to_thread(
            self._query, "SELECT round FROM solo_rounds WHERE id = ?", (round_id,)
        )
        return rounds[0] if rounds else None

    async def list(self, limit: int = 40) -> List[Round]:
        return await asyncio.to_thread(
            self._query, "SELECT round FROM solo_rounds ORDER BY created_at DESC LIMIT ?", (limit,)
        )

    async def find_active_by_player(self, player_address: str) -> Optional[Round]:
        rounds = await asyncio.to_thread(
            self._query,
            """
            SELECT round FROM solo_rounds
            WHERE player_key = ? AND status != 'completed'
            ORDER BY created_at DESC LIMIT 1
        """,
            (player_key(player_address),),
        )
        return rounds[0] if rounds else None

    async def _read_modify_write(self, round_id: str, updater: Updater) -> Optional[Round]:
        return await asyncio.to_thread(self._update_in_transaction, round_id, updater)

    async def close(self):
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            conn.close()


# ==================== JSON file ====================

class JsonFileRoundStore(RoundStore):
    """Single JSON document. Not safe for more than one process."""

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)
        self._ensure_store()

    def _ensure_store(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.write_bytes(b"[]\n")

    def _read(self) -> List[Round]:
        self._ensure_store()
        parsed = orjson.loads(self.path.read_bytes() or b"[]")
        if not isinstance(parsed, list):
            return []
        return [round_from_dict(item) for item in parsed]

    def _write(self, rounds: List[Round]):
        payload = orjson.dumps([round_to_dict(r) for r in rounds], option=orjson.OPT_INDENT_2)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload + b"\n")
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    async def create(self, round_: Round) -> None:
        async with self._write_lock:
            rounds = self._read()
            if any(r.is_active and r.player_key == round_.player_key for r in rounds):
                raise StoreConflictError(f"Player {round_.player_key} already has an active round")
            rounds.insert(0, round_)
            self._write(rounds)

    async def get(self, round_id: str) -> Optional[Round]:
        return next((r for r in self._read() if r.id == round_id), None)

    async def list(self, limit: int = 40) -> List[Round]:
        rounds = sorted(self._read(), key=lambda r: r.created_at, reverse=True)
        return rounds[:limit]

    async def find_active_by_player(self, player_address: str) -> Optional[Round]:
        key = player_key(player_address)
        return next((r for r in self._read() if r.is_active and r.player_key == key), None)

    async def _read_modify_write(self, round_id: str, updater: Updater) -> Optional[Round]:
        rounds = self._read()
        index = next((i for i, r in enumerate(rounds) if r.id == round_id), None)
        if index is None:
            return None

        current = rounds[index]
        updated = _touch(current, updater(current))
        if updated is not current:
            rounds[index] = updated
            self._write(rounds)
        return updated


# ==================== Supabase ====================

class SupabaseRoundStore(RoundStore):
    def __init__(
        self,
        url: str,
        service_role_key: str,
        table: str = "solo_rounds",
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__()
        self.table = table
        headers = {
            "apikey": service_role_key,
            "Authorization": f"Bearer {service_role_key}",
            "Content-Type": "application/json",
        }
        self._client = client or httpx.AsyncClient(
            base_url=f"{url.rstrip('/')}/rest/v1", headers=headers, timeout=15.0
        )
        if client is not None:
            self._client.headers.update(headers)

    async def _request(self, method: str, action: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, f"/{self.table}", **kwargs)
        except httpx.HTTPError as e:
            raise StoreError(f"Supabase {action} failed: {e}") from e
        return response

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text
        if isinstance(body, dict):
            return body.get("message") or response.text
        return response.text

    def _rounds(self, response: httpx.Response, action: str) -> List[Round]:
        if response.status_code >= 400:
            raise StoreError(f"Supabase {action} failed: {self._error_message(response)}")
        return [round_from_dict(row["round"]) for row in response.json() or []]

    async def create(self, round_: Round) -> None:
        row = {
            "id": round_.id,
            "player_key": round_.player_key,
            "status": round_.status,
            "created_at": round_.created_at.isoformat(),
            "updated_at": round_.updated_at.isoformat(),
            "round": round_to_dict(round_),
        }
        response = await self._request(
            "POST", "create round", content=orjson.dumps(row), headers={"Prefer": "return=minimal"}
        )
        if response.status_code == 409:
            raise StoreConflictError(
                f"Player {round_.player_key} already has an active round: {self._error_message(response)}"
            )
        if response.status_code >= 400:
            raise StoreError(f"Supabase create round failed: {self._error_message(response)}")

    async def get(self, round_id: str) -> Optional[Round]:
        response = await self._request(
            "GET", "get round", params={"select": "round", "id": f"eq.{round_id}", "limit": "1"}
        )
        rounds = self._rounds(response, "get round")
        return rounds[0] if rounds else None

    async def list(self, limit: int = 40) -> List[Round]:
        response = await self._request(
            "GET",
            "list rounds",
            params={"select": "round", "order": "created_at.desc", "limit": str(limit)},
        )
        return self._rounds(response, "list rounds")

    async def find_active_by_player(self, player_address: str) -> Optional[Round]:
        response = await self._request(
            "GET",
            "find active round",
            params={
                "select": "round",
                "player_key": f"eq.{player_key(player_address)}",
                "status": "neq.completed",
                "order": "created_at.desc",
                "limit": "1",
            },
        )
        rounds = self._rounds(response, "find active round")
        return rounds[0] if rounds else None

    async def _read_modify_write(self, round_id: str, updater: Updater) -> Optional[Round]:
        # The PATCH only matches the version that was read; a concurrent writer
        # makes it match nothing, and the update is re-applied to a fresh read.
        for _ in range(UPDATE_ATTEMPTS):
            current = await self.get(round_id)
            if current is None:
                return None

            updated = _touch(current, updater(current))
            if updated is current:
                return current

            response = await self._request(
                "PATCH",
                "update round",
                params={
                    "id": f"eq.{round_id}",
                    "updated_at": f"eq.{current.updated_at.isoformat()}",
                    "select": "round",
                },
                content=orjson.dumps(
                    {
                        "status": updated.status,
                        "updated_at": updated.updated_at.isoformat(),
                        "round": round_to_dict(updated),
                    }
                ),
                headers={"Prefer": "return=representation"},
            )
            rounds = self._rounds(response, "update round")
            if rounds:
                return rounds[0]
            logger.info(f"Round {round_id} changed while updating; retrying on the fresh record")

        raise StoreError(f"Round {round_id} kept changing; gave up after {UPDATE_ATTEMPTS} attempts")

    async def close(self):
        await self._client.aclose()


def create_round_store(config) -> RoundStore:
    """Build the store named by `config.storage.backend`."""
    backend = config.storage.backend.lower()
    if backend == "supabase":
        if not config.storage.supabase_url or not config.storage.supabase_service_role_key:
            raise StoreError("Supabase backend needs SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY")
        return SupabaseRoundStore(
            config.storage.supabase_url,
            config.storage.supabase_service_role_key,
            config.storage.supabase_table,
        )
    if backend == "file":
        logger.warning("Using JSON file round store; not suitable for multiple instances")
        return JsonFileRoundStore(config.paths.get_rounds_path())
    if backend == "sqlite":
        return SqliteRoundStore(config.paths.get_db_path())
    raise StoreError(f"Unknown storage backend: {config.storage.backend}")
