import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import ORJSONResponse
from slowapi import Limiter
from slowapi.util import get_remote_address

from coinflip.config import settings
from coinflip.core.logger import get_logger
from coinflip.core.models import CamelModel, round_to_dict
from coinflip.core.solo import SoloGameService, get_solo_service

logger = get_logger("api")

limiter = Limiter(key_func=get_remote_address)

router = APIRouter()

# ==================== Request Models ====================


class CreateRoundRequest(CamelModel):
    player_address: Optional[str] = None
    move: Optional[str] = None


# ==================== Helpers ====================


def get_create_rate_limit() -> str:
    return settings.rate_limit.create_requests if settings.rate_limit.enabled else "1000/minute"


def get_api_rate_limit() -> str:
    return settings.rate_limit.api_requests if settings.rate_limit.enabled else "10000/minute"


def round_not_found() -> ORJSONResponse:
    return ORJSONResponse(status_code=404, content={"error": "Round not found"})


# ==================== Solo Rounds ====================


@router.post("/solo/rounds", status_code=201)
@limiter.limit(get_create_rate_limit)
async def create_round(
    request: Request,
    data: CreateRoundRequest,
    service: SoloGameService = Depends(get_solo_service),
):
    round_ = await service.create_round(data.player_address or "", data.move or "")
    return ORJSONResponse(status_code=201, content={"round": round_to_dict(round_)})


@router.get("/solo/rounds")
@limiter.limit(get_api_rate_limit)
async def list_rounds(
    request: Request,
    roundId: Optional[str] = None,
    playerAddress: Optional[str] = None,
    pendingOnly: bool = False,
    service: SoloGameService = Depends(get_solo_service),
):
    round_id = (roundId or "").strip()
    if round_id:
        round_ = await service.get_round_with_lifecycle(round_id)
        if round_ is None:
            return round_not_found()
        return {"round": round_to_dict(round_)}

    player_address = (playerAddress or "").strip()
    if player_address:
        rounds = await service.list_rounds_by_player_with_lifecycle(
            player_address, pending_only=pendingOnly
        )
        return {"rounds": [round_to_dict(r) for r in rounds]}

    rounds, org_balance = await asyncio.gather(
        service.list_rounds_with_lifecycle(), service.org_balance_crc()
    )
    return {
        "rounds": [round_to_dict(r) for r in rounds],
        "config": {
            "payout": {
                **service.payout_configuration(),
                "orgBalanceCRC": org_balance,
                **service.economics(),
            }
        },
    }


@router.get("/solo/rounds/{round_id}")
@limiter.limit(get_api_rate_limit)
async def get_round(
    request: Request,
    round_id: str,
    service: SoloGameService = Depends(get_solo_service),
):
    round_ = await service.get_round_with_lifecycle(round_id)
    if round_ is None:
        return round_not_found()
    return {"round": round_to_dict(round_)}
