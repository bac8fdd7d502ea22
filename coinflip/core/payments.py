"""
Payment detection for solo rounds.

The event feed is the fast path. When it has nothing (or fails) the recipient's
transfer history is scanned newest-first, bounded in pages so a busy recipient
cannot make a single poll arbitrarily slow. Detection never raises: a failed
lookup is "not paid yet" and the next poll tries again.
"""

from datetime import datetime
from typing import Optional

from coinflip.core.circles import CirclesRpc
from coinflip.core.logger import get_logger
from coinflip.core.matching import TransferEvent, event_matches, history_row_matches

logger = get_logger("payments")


class PaymentLocator:
    def __init__(
        self,
        rpc: CirclesRpc,
        event_scan_limit: int = 200,
        history_page_size: int = 50,
        history_max_pages: int = 5,
    ):
        self.rpc = rpc
        self.event_scan_limit = event_scan_limit
        self.history_page_size = history_page_size
        self.history_max_pages = history_max_pages

    async def find_in_event_feed(self, expected_data: str, recipient: str) -> Optional[TransferEvent]:
        events = await self.rpc.fetch_transfer_data_events(self.event_scan_limit, recipient)
        for event in events:
            if event_matches(event, expected_data, recipient):
                return event
        return None

    async def find_in_history(
        self,
        player: str,
        recipient: str,
        min_amount_atto: int,
        created_at: datetime,
        expected_data: Optional[str] = None,
    ) -> Optional[TransferEvent]:
        created_after = int(created_at.timestamp())
        cursor = None

        for _ in range(self.history_max_pages):
            page = await self.rpc.transaction_history_page(recipient, self.history_page_size, cursor)
            for row in page.rows:
                if history_row_matches(row, player, recipient, min_amount_atto, created_after, expected_data):
                    return row.to_transfer_event()
            if not page.has_more:
                break
            cursor = page.next_cursor

        return None

    async def locate(
        self,
        expected_data: str,
        min_amount_atto: int,
        recipient: str,
        player: str,
        created_at: datetime,
    ) -> Optional[TransferEvent]:
        """First qualifying payment for a round, or None."""
        if not expected_data or min_amount_atto <= 0:
            return None

        try:
            payment = await self.find_in_event_feed(expected_data, recipient)
        except Exception as e:
            logger.warning(f"Event feed lookup failed for {expected_data}: {e}")
            payment = None

        if payment:
            return payment

        try:
            return await self.find_in_history(
                player, recipient, min_amount_atto, created_at, expected_data
            )
        except Exception as e:
            logger.warning(f"History lookup failed for {expected_data}: {e}")
            return None
