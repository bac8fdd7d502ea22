"""
Error taxonomy for the solo coinflip game.

`SoloGameError` and its subclasses are user-facing: they carry the HTTP status
the API layer answers with. Storage and RPC errors stay internal.
"""

from typing import Optional


class SoloGameError(Exception):
    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class SoloValidationError(SoloGameError):
    """Bad address, bad move or malformed amount."""


class InvalidAmount(SoloValidationError):
    pass


class RoundConflictError(SoloGameError):
    """The player already has a round that is not completed."""
    status_code = 409

    def __init__(self, message: str, round_id: Optional[str] = None):
        super().__init__(message)
        self.round_id = round_id


class PreflightRejection(SoloGameError):
    """No transfer path, or player/recipient are not Circles avatars."""


class StoreError(Exception):
    pass


class StoreConflictError(StoreError):
    """Backing store refused a second active round for the same player."""


class CirclesRpcError(Exception):
    pass


class PayoutError(Exception):
    pass
