"""
Solo coinflip round lifecycle.

awaiting_payment -> resolving -> completed

There is no background worker: every read of a round (or a list of rounds)
pushes unfinished rounds forward. Processing is safe to run concurrently from
several pollers. The move into `resolving` is a conditional write that stamps
a fresh claim token, and only the caller holding that token may write the
final result.
"""

import asyncio
import uuid
from typing import List, Optional

from web3 import Web3

from coinflip.config import settings, AppConfig
from coinflip.core.amounts import from_base_units, parse_decimal_amount, to_base_units
from coinflip.core.circles import CirclesRpc, generate_payment_link
from coinflip.core.exceptions import (
    InvalidAmount,
    PreflightRejection,
    RoundConflictError,
    SoloGameError,
    SoloValidationError,
    StoreConflictError,
    StoreError,
)
from coinflip.core.locks import PlayerLockRegistry
from coinflip.core.logger import get_logger
from coinflip.core.models import (
    MOVES,
    AwaitingPaymentRound,
    CompletedRound,
    Payment,
    Payout,
    ResolvingRound,
    Round,
    RoundResult,
    opposite,
    player_key,
    transition,
    utc_now,
)
from coinflip.core.payment_builder import PaymentBuilder
from coinflip.core.payments import PaymentLocator
from coinflip.core.payout import PayoutExecutor
from coinflip.core.rng import rng as default_rng
from coinflip.core.store import RoundStore, create_round_store

logger = get_logger("solo")

# Uniform draw over [0, WIN_ROLL_MAX]; only 0 wins (1 in 10)
WIN_ROLL_MAX = 9
LOSS_PAYOUT_NOTE = "Round lost. No payout."


def build_move_data(round_id: str, move: str, player_address: str) -> str:
    """Marker the player's transfer must carry; unique per round."""
    return f"solo-move:{round_id}:{move}:{player_key(player_address)}"


def normalize_move(value: str) -> str:
    normalized = (value or "").strip().lower()
    if normalized not in MOVES:
        raise SoloValidationError("Move must be 'heads' or 'tails'")
    return normalized


def should_retry_legacy_payout(round_: Round, error_markers: List[str]) -> bool:
    """
    One-off recovery for winning rounds whose payout failed because of the old
    direct-transfer payout path. Everything else stays failed for an operator.
    """
    if round_.status != "completed" or round_.result.outcome != "win":
        return False
    if round_.payout.status != "failed" or round_.payout.tx_hash:
        return False
    if (round_.payout.retry_count or 0) >= 1:
        return False

    payout_error = (round_.payout.error or "").lower()
    return any(marker.lower() in payout_error for marker in error_markers)


def _conflict_message(round_id: str) -> str:
    return (
        f"You already have a pending round ({round_id[:8]}). "
        "Complete it before creating a new move."
    )


def _config_amount_units(value: str, field_label: str) -> int:
    """Amounts coming from configuration or stored rounds; bad values are server faults."""
    try:
        parse_decimal_amount(value, field_label)
        return to_base_units(value, field_label)
    except InvalidAmount as e:
        raise InvalidAmount(e.message, status_code=500) from e


class SoloGameService:
    def __init__(
        self,
        config: AppConfig,
        store: RoundStore,
        rpc: CirclesRpc,
        locator: PaymentLocator,
        payout_executor: PayoutExecutor,
        payment_builder: PaymentBuilder,
        rng=default_rng,
    ):
        self.config = config
        self.store = store
        self.rpc = rpc
        self.locator = locator
        self.payout_executor = payout_executor
        self.payment_builder = payment_builder
        self.rng = rng
        self.locks = PlayerLockRegistry()

    @classmethod
    def from_config(cls, config: AppConfig) -> "SoloGameService":
        rpc = CirclesRpc(
            config.circles.rpc_url,
            timeout=config.circles.request_timeout_seconds,
            transfer_data_event=config.circles.transfer_data_event,
        )
        return cls(
            config=config,
            store=create_round_store(config),
            rpc=rpc,
            locator=PaymentLocator(
                rpc,
                event_scan_limit=config.solo.event_scan_limit,
                history_page_size=config.solo.history_page_size,
                history_max_pages=config.solo.history_max_pages,
            ),
            payout_executor=PayoutExecutor(config.circles, rpc),
            payment_builder=PaymentBuilder(config.circles.hub_address, rpc),
        )

    async def close(self):
        await self.store.close()
        await self.rpc.aclose()

    @property
    def org_address(self) -> str:
        return (self.config.circles.org_avatar_address or "").strip()

    # ==================== Configuration views ====================

    def economics(self) -> dict:
        return {
            "entryFeeCRC": self.config.solo.entry_fee_crc,
            "winnerPayoutCRC": self.config.solo.win_payout_crc,
            "entryRecipientAddress": self.org_address,
        }

    def payout_configuration(self) -> dict:
        return {
            "orgAvatarAddress": self.org_address or None,
            "isConfigured": self.payout_executor.is_configured(),
        }

    async def org_balance_crc(self) -> Optional[str]:
        """Org avatar's CRC balance for display; None when unknown."""
        if not Web3.is_address(self.org_address):
            return None
        try:
            return from_base_units(await self.rpc.get_total_balance(self.org_address))
        except Exception as e:
            logger.debug(f"Could not read org balance: {e}")
            return None

    # ==================== Creation ====================

    async def ensure_player_can_pay_entry_fee(
        self, player_address: str, recipient_address: str, entry_fee_atto: int
    ):
        try:
            player_info, recipient_info = await asyncio.gather(
                self.rpc.get_avatar_info(player_address),
                self.rpc.get_avatar_info(recipient_address),
            )

            if not player_info:
                raise PreflightRejection(
                    f"Player address is not a Circles avatar: {player_address}. "
                    "Use the player's Circles avatar/safe address (the one holding CRC), "
                    "not an EOA signer address."
                )
            if not recipient_info:
                raise PreflightRejection(
                    f"Recipient is not a Circles avatar: {recipient_address}. "
                    "Check CIRCLES_ORG_AVATAR_ADDRESS."
                )

            max_transferable = await self.rpc.find_max_flow(player_address, recipient_address)
            if max_transferable < entry_fee_atto:
                raise PreflightRejection(
                    f"No valid transfer path for this move. Required "
                    f"{from_base_units(entry_fee_atto)} CRC to {recipient_address}, but max "
                    f"transferable is {from_base_units(max_transferable)} CRC."
                )
        except SoloGameError:
            raise
        except Exception as e:
            raise PreflightRejection(f"Could not verify transfer path to recipient. {e}") from e

    async def create_round(self, player_address: str, move: str) -> Round:
        org_address = self.org_address
        if not org_address or not Web3.is_address(org_address):
            raise SoloValidationError("CIRCLES_ORG_AVATAR_ADDRESS must be configured for payouts")

        player_address = (player_address or "").strip()
        if not player_address:
            raise SoloValidationError("playerAddress is required")
        if not Web3.is_address(player_address):
            raise SoloValidationError("playerAddress is invalid")
        move = normalize_move(move)

        round_ = await self.locks.with_lock(
            player_address, lambda: self._create_locked(player_address, move, org_address)
        )
        logger.info(f"Created round {round_.id} for {player_key(player_address)} ({move})")
        return round_

    async def _create_locked(self, player_address: str, move: str, org_address: str) -> Round:
        active = await self.store.find_active_by_player(player_address)
        if active:
            raise RoundConflictError(_conflict_message(active.id), round_id=active.id)

        entry_fee = self.config.solo.entry_fee_crc
        entry_fee_atto = _config_amount_units(entry_fee, "SOLO_ENTRY_FEE_CRC")

        if self.config.solo.preflight_enabled:
            await self.ensure_player_can_pay_entry_fee(player_address, org_address, entry_fee_atto)

        round_id = str(uuid.uuid4())
        now = utc_now()
        expected_data = build_move_data(round_id, move, player_address)

        try:
            draft = await self.payment_builder.build(
                player_address, org_address, entry_fee_atto, expected_data
            )
        except Exception as e:
            raise SoloGameError(f"Could not construct payment transaction. {e}") from e

        round_ = AwaitingPaymentRound(
            id=round_id,
            created_at=now,
            updated_at=now,
            player_address=player_address,
            move=move,
            payment=Payment(
                recipient_address=org_address,
                payment_link=generate_payment_link(
                    self.config.circles.payment_link_base, org_address, entry_fee, expected_data
                ),
                expected_data=expected_data,
                amount_crc=entry_fee,
                transactions=draft.transactions,
                host_transactions=draft.host_transactions,
            ),
            payout=Payout(
                from_address=org_address,
                to_address=player_address,
                amount_crc=self.config.solo.win_payout_crc,
            ),
        )

        try:
            await self.store.create(round_)
        except StoreConflictError:
            # Another instance won the race past our in-process lock
            try:
                latest = await self.store.find_active_by_player(player_address)
            except StoreError:
                latest = None
            if latest:
                raise RoundConflictError(_conflict_message(latest.id), round_id=latest.id)
            raise RoundConflictError(
                "A pending round already exists for this player. Refresh and try again."
            )

        return round_

    # ==================== Lifecycle ====================

    def _should_retry(self, round_: Round) -> bool:
        return should_retry_legacy_payout(round_, self.config.solo.legacy_retry_markers)

    async def process_round_lifecycle(self, round_id: str) -> Optional[Round]:
        current = await self.store.get(round_id)
        if current is None:
            return None

        if current.status == "completed":
            if not self._should_retry(current):
                return current
            return await self._retry_legacy_payout(current)

        if current.status == "resolving":
            # Someone else holds the claim
            return current

        min_amount_atto = _config_amount_units(current.payment.amount_crc, "payment.amountCRC")
        payment = await self.locator.locate(
            expected_data=current.payment.expected_data,
            min_amount_atto=min_amount_atto,
            recipient=current.payment.recipient_address,
            player=current.player_address,
            created_at=current.created_at,
        )
        if not payment:
            return current

        claim_token = self.rng.token()
        paid_at = utc_now()

        def claim(round_: Round) -> Round:
            return transition(
                round_,
                ResolvingRound,
                processing_token=claim_token,
                payment=round_.payment.model_copy(
                    update={
                        "status": "paid",
                        "transaction_hash": payment.transaction_hash,
                        "paid_at": paid_at,
                    }
                ),
                payout=round_.payout.model_copy(
                    update={"status": "processing", "processed_at": paid_at}
                ),
            )

        claimed, swapped = await self.store.compare_and_swap(
            round_id, lambda r: r.status == "awaiting_payment", claim
        )
        if claimed is None:
            return None
        if not swapped or getattr(claimed, "processing_token", None) != claim_token:
            return claimed

        logger.info(f"Round {round_id} paid in tx {payment.transaction_hash}; resolving")
        return await self._resolve(claimed, claim_token)

    async def _resolve(self, claimed: ResolvingRound, claim_token: str) -> Round:
        is_win = self.rng.random_int(0, WIN_ROLL_MAX) == 0
        outcome = "win" if is_win else "lose"
        # The displayed coin follows the outcome
        coin = claimed.move if is_win else opposite(claimed.move)

        if is_win:
            payout = await self.payout_executor.pay(
                claimed.id, claimed.player_address, claimed.payout.amount_crc
            )
        else:
            payout = claimed.payout.model_copy(
                update={"status": "skipped", "error": LOSS_PAYOUT_NOTE, "processed_at": utc_now()}
            )

        result = RoundResult(coin=coin, outcome=outcome, resolved_at=utc_now())

        def finalize(round_: Round) -> Round:
            return transition(round_, CompletedRound, result=result, payout=payout)

        completed, swapped = await self.store.compare_and_swap(
            claimed.id,
            lambda r: getattr(r, "processing_token", None) == claim_token,
            finalize,
        )
        if completed is None:
            return transition(claimed, CompletedRound, result=result, payout=payout)
        if not swapped:
            logger.warning(f"Round {claimed.id} was finalized elsewhere; keeping stored state")
        else:
            logger.info(f"Round {claimed.id} completed: {outcome}, payout {payout.status}")
        return completed

    async def _retry_legacy_payout(self, current: CompletedRound) -> Round:
        logger.info(f"Retrying legacy payout for round {current.id}")
        payout = await self.payout_executor.pay(
            current.id, current.player_address, current.payout.amount_crc
        )

        def record_retry(round_: Round) -> Round:
            retry_count = (round_.payout.retry_count or 0) + 1
            return round_.model_copy(
                update={"payout": payout.model_copy(update={"retry_count": retry_count})}
            )

        retried, _ = await self.store.compare_and_swap(current.id, self._should_retry, record_retry)
        return retried or current.model_copy(update={"payout": payout})

    # ==================== Reads (drive the lifecycle) ====================

    async def get_round_with_lifecycle(self, round_id: str) -> Optional[Round]:
        processed = await self.process_round_lifecycle(round_id)
        if processed:
            return processed
        return await self.store.get(round_id)

    async def list_rounds_with_lifecycle(self, limit: Optional[int] = None) -> List[Round]:
        limit = limit or self.config.solo.list_limit
        for round_ in await self.store.list(limit):
            if round_.status != "completed":
                await self.process_round_lifecycle(round_.id)
        return await self.store.list(limit)

    async def list_rounds_by_player_with_lifecycle(
        self, player_address: str, limit: Optional[int] = None, pending_only: bool = False
    ) -> List[Round]:
        limit = limit or self.config.solo.player_list_limit
        key = player_key(player_address)

        for round_ in await self.store.list(limit):
            if round_.player_key == key and round_.status != "completed":
                await self.process_round_lifecycle(round_.id)

        rounds = [r for r in await self.store.list(limit) if r.player_key == key]
        if pending_only:
            return [r for r in rounds if r.status != "completed"]
        return rounds


_service: Optional[SoloGameService] = None


def get_solo_service() -> SoloGameService:
    """Process-wide service built from the global settings on first use."""
    global _service
    if _service is None:
        _service = SoloGameService.from_config(settings)
    return _service


async def shutdown_solo_service():
    global _service
    if _service is not None:
        await _service.close()
        _service = None
