"""
Race routes for the race rewards API.
Handles the distribution trigger, race reads, and operator actions.
"""

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse

import structlog

from app.api.dependencies import (
    get_pagination_params,
    get_race_status_filter,
    to_http_exception,
    validate_admin_access,
    validate_wallet_param,
)
from app.api.schemas.common import (
    PaginatedResponse,
    PaginationParams,
    SuccessResponse,
    create_paginated_response,
    create_success_response,
)
from app.api.schemas.races import (
    ParticipantResponse,
    RaceCreate,
    RaceResponse,
    RoundParticipantsResponse,
    WalletRewardsResponse,
)
from app.core.exceptions import RaceRewardsException
from app.models.race import RacePool, RaceStatus, SnapshotStatus
from app.services.races.job import RaceRewardJob, get_race_reward_job
from app.services.races.repository import RaceRepository
from app.utils.timeutils import utc_now
from app.utils.validation import RaceDataValidator


logger = structlog.get_logger(__name__)

router = APIRouter()


async def get_race_repository() -> RaceRepository:
    return RaceRepository()


@router.post(
    "/distribute",
    summary="Run Distribution Tick",
    description="Recover stuck races and advance every race due for a snapshot phase"
)
async def distribute_rewards(job: RaceRewardJob = Depends(get_race_reward_job)):
    """Run one race reward tick."""
    try:
        report = await job.run_tick()
        return report.to_response()
    except Exception as e:
        logger.error("Race reward distribution failed", error=str(e), exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": str(e)}
        )


@router.get(
    "",
    response_model=PaginatedResponse,
    summary="List Races",
    description="List races, newest first, optionally filtered by status"
)
async def list_races(
    race_status: Optional[RaceStatus] = Depends(get_race_status_filter),
    pagination: PaginationParams = Depends(get_pagination_params),
    repository: RaceRepository = Depends(get_race_repository)
):
    races, total = await repository.list_races(race_status, pagination.limit, pagination.offset)
    return create_paginated_response(
        [RaceResponse.model_validate(race) for race in races], total, pagination
    )


@router.post(
    "",
    response_model=SuccessResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create Race",
    description="Create an active race starting its first round now (admin)"
)
async def create_race(
    payload: RaceCreate,
    _admin: str = Depends(validate_admin_access),
    repository: RaceRepository = Depends(get_race_repository)
):
    errors = RaceDataValidator.validate_race_config(
        payload.contract_address,
        payload.total_rounds,
        payload.token_decimals,
        payload.prize_pool,
        payload.daily_reward_amount
    )
    if errors:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "INVALID_RACE_CONFIG", "message": "; ".join(errors)}
        )

    now = utc_now()
    race = RacePool(
        **payload.model_dump(),
        status=RaceStatus.ACTIVE,
        current_round=1,
        round_started_at=now,
        snapshot_status=SnapshotStatus.PENDING,
        retry_count=0,
        total_participants=0,
        time_remaining_hours=Decimal(payload.total_rounds * 24),
        created_at=now,
        updated_at=now,
    )
    race = await repository.create_race(race)

    logger.info("Race created", race_id=race.id, token=race.token_symbol, total_rounds=race.total_rounds)
    return create_success_response(data=RaceResponse.model_validate(race), message="Race created")


@router.get(
    "/{race_id}",
    response_model=SuccessResponse,
    summary="Get Race",
    description="Race details including snapshot progress"
)
async def get_race(race_id: str, repository: RaceRepository = Depends(get_race_repository)):
    try:
        race = await repository.get_race(race_id)
    except RaceRewardsException as e:
        raise to_http_exception(e)
    return create_success_response(data=RaceResponse.model_validate(race))


@router.get(
    "/{race_id}/participants",
    response_model=SuccessResponse,
    summary="Round Participants",
    description="Participants of a round ordered by rank (defaults to the current round)"
)
async def get_round_participants(
    race_id: str,
    round_number: Optional[int] = Query(None, alias="round", ge=1, description="Round number"),
    repository: RaceRepository = Depends(get_race_repository)
):
    try:
        race = await repository.get_race(race_id)
    except RaceRewardsException as e:
        raise to_http_exception(e)

    round_number = round_number or race.round_number
    participants = await repository.load_round_participants(race_id, round_number)

    return create_success_response(data=RoundParticipantsResponse(
        race_id=race_id,
        round_number=round_number,
        participants=[ParticipantResponse.model_validate(p) for p in participants],
        total=len(participants),
        eligible=sum(1 for p in participants if p.is_eligible),
    ))


@router.get(
    "/{race_id}/rewards/{wallet}",
    response_model=SuccessResponse,
    summary="Wallet Rewards",
    description="Per-round rewards of a wallet and its unclaimed total"
)
async def get_wallet_rewards(
    race_id: str,
    wallet: str = Depends(validate_wallet_param),
    repository: RaceRepository = Depends(get_race_repository)
):
    try:
        await repository.get_race(race_id)
    except RaceRewardsException as e:
        raise to_http_exception(e)

    rounds = await repository.list_wallet_rewards(race_id, wallet)
    total = sum((Decimal(r.reward_amount or 0) for r in rounds), Decimal("0"))
    unclaimed = sum((Decimal(r.reward_amount) for r in rounds if r.is_claimable), Decimal("0"))

    return create_success_response(data=WalletRewardsResponse(
        race_id=race_id,
        wallet=wallet,
        rounds=[ParticipantResponse.model_validate(r) for r in rounds],
        total_rewards=total,
        unclaimed_total=unclaimed,
    ))


@router.post(
    "/{race_id}/reset",
    response_model=SuccessResponse,
    summary="Reset Errored Race",
    description="Return a race in error to its retryable phase with a fresh retry budget (admin)"
)
async def reset_race(
    race_id: str,
    _admin: str = Depends(validate_admin_access),
    repository: RaceRepository = Depends(get_race_repository)
):
    try:
        race = await repository.reset_race(race_id, utc_now())
    except RaceRewardsException as e:
        raise to_http_exception(e)

    logger.warning("Race reset by operator", race_id=race_id, snapshot_status=race.phase.value)
    return create_success_response(data=RaceResponse.model_validate(race), message="Race reset")
