"""
Claim routes for the race rewards API.
Handles reward claim requests and payout confirmation.
"""

from fastapi import APIRouter, Depends, status

import structlog

from app.api.dependencies import to_http_exception
from app.api.schemas.claims import ClaimConfirm, ClaimCreate, ClaimResponse
from app.api.schemas.common import SuccessResponse, create_success_response
from app.core.exceptions import RaceRewardsException
from app.services.payouts.claim_service import ClaimService, get_claim_service


logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post(
    "",
    response_model=SuccessResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Claim Rewards",
    description="Bundle all unclaimed rewards of a wallet in a race into one claim request"
)
async def create_claim(payload: ClaimCreate, service: ClaimService = Depends(get_claim_service)):
    try:
        claim = await service.create_claim(payload.race_id, payload.wallet)
    except RaceRewardsException as e:
        raise to_http_exception(e)

    return create_success_response(
        data=ClaimResponse.model_validate(claim),
        message="Claim request created"
    )


@router.get(
    "/{claim_id}",
    response_model=SuccessResponse,
    summary="Get Claim",
    description="Claim request status"
)
async def get_claim(claim_id: int, service: ClaimService = Depends(get_claim_service)):
    try:
        claim = await service.get_claim(claim_id)
    except RaceRewardsException as e:
        raise to_http_exception(e)
    return create_success_response(data=ClaimResponse.model_validate(claim))


@router.post(
    "/{claim_id}/confirm",
    response_model=SuccessResponse,
    summary="Confirm Claim",
    description="Confirm the payout transaction of a claim request"
)
async def confirm_claim(
    claim_id: int,
    payload: ClaimConfirm,
    service: ClaimService = Depends(get_claim_service)
):
    try:
        claim = await service.confirm_claim(claim_id, payload.tx_hash, payload.wallet)
    except RaceRewardsException as e:
        raise to_http_exception(e)

    return create_success_response(
        data=ClaimResponse.model_validate(claim),
        message="Claim confirmed"
    )
