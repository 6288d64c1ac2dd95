"""
Admin API routes - token records, identities and manual job runs.

Protected by the X-Admin-Key header. Tokens are always passed in request
bodies, never in paths, so they stay out of access logs.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from displex.api.dependencies import require_admin_key
from displex.db.session import get_db
from displex.exceptions import (
    IdentityNotFoundError,
    InvalidTokenTransitionError,
    TokenNotFoundError,
)
from displex.models.api import (
    CreateTokenRequest,
    CreateTokenResponse,
    DiscordUserResponse,
    MessageResponse,
    PassReportResponse,
    SetTokenStatusRequest,
    TokenRecordResponse,
    TokenRefRequest,
)
from displex.models.domain import PassReport, TokenStatus, token_fingerprint
from displex.services.identity import DiscordUserStore
from displex.services.token_store import DiscordTokenStore
from displex.tasks import run_request_tier_sync, run_subscriber_sync, run_token_maintenance

logger = get_logger(__name__)
router = APIRouter(
    prefix="/v1/admin", tags=["admin"], dependencies=[Depends(require_admin_key)]
)


# ============================================================================
# Tokens
# ============================================================================


@router.get("/tokens", response_model=list[TokenRecordResponse])
async def list_tokens(
    discord_user_id: str | None = Query(None),
    before_expires_at: datetime | None = Query(None),
    token_status: TokenStatus | None = Query(None, alias="status"),
    db: AsyncSession = Depends(get_db),
) -> list[TokenRecordResponse]:
    """List token records, newest expiry first."""
    tokens = await DiscordTokenStore(db).list(
        discord_user_id=discord_user_id,
        before_expires_at=before_expires_at,
        status=token_status,
    )
    return [TokenRecordResponse.model_validate(token) for token in tokens]


@router.post("/tokens", response_model=CreateTokenResponse, status_code=status.HTTP_201_CREATED)
async def create_token(
    request: CreateTokenRequest,
    db: AsyncSession = Depends(get_db),
) -> CreateTokenResponse:
    """Insert a token record. An existing access token is left untouched."""
    if await DiscordUserStore(db).get(request.discord_user_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Discord user not found: {request.discord_user_id}",
        )

    if request.expires_at.tzinfo is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="expires_at must include a timezone",
        )

    access_token = await DiscordTokenStore(db).create(
        access_token=request.access_token,
        refresh_token=request.refresh_token,
        scopes=request.scopes,
        expires_at=request.expires_at,
        discord_user_id=request.discord_user_id,
    )
    return CreateTokenResponse(access_token=access_token)


@router.post("/tokens/lookup", response_model=TokenRecordResponse)
async def get_token(
    request: TokenRefRequest,
    db: AsyncSession = Depends(get_db),
) -> TokenRecordResponse:
    token = await DiscordTokenStore(db).get(request.access_token)
    if token is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Token not found")
    return TokenRecordResponse.model_validate(token)


@router.post("/tokens/status", response_model=TokenRecordResponse)
async def set_token_status(
    request: SetTokenStatusRequest,
    db: AsyncSession = Depends(get_db),
) -> TokenRecordResponse:
    """Set a token's status. Terminal statuses cannot be left."""
    try:
        token = await DiscordTokenStore(db).set_status(request.access_token, request.status)
    except TokenNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidTokenTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    logger.info(
        "admin_token_status_set",
        access_token=token_fingerprint(request.access_token),
        status=request.status.name,
    )
    return TokenRecordResponse.model_validate(token)


@router.post("/tokens/delete", response_model=MessageResponse)
async def delete_token(
    request: TokenRefRequest,
    db: AsyncSession = Depends(get_db),
) -> MessageResponse:
    if not await DiscordTokenStore(db).delete(request.access_token):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Token not found")

    logger.info("admin_token_deleted", access_token=token_fingerprint(request.access_token))
    return MessageResponse(message="Token deleted")


@router.get("/users/{discord_user_id}/tokens/latest", response_model=TokenRecordResponse)
async def get_latest_token(
    discord_user_id: str,
    db: AsyncSession = Depends(get_db),
) -> TokenRecordResponse:
    """The Active token with the latest expiry for an identity."""
    token = await DiscordTokenStore(db).latest_token(discord_user_id)
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No active token for discord user {discord_user_id}",
        )
    return TokenRecordResponse.model_validate(token)


# ============================================================================
# Identities
# ============================================================================


@router.get("/users", response_model=list[DiscordUserResponse])
async def list_users(db: AsyncSession = Depends(get_db)) -> list[DiscordUserResponse]:
    users = await DiscordUserStore(db).list_all()
    return [DiscordUserResponse.model_validate(user) for user in users]


@router.post("/users/{discord_user_id}/deactivate", response_model=DiscordUserResponse)
async def deactivate_user(
    discord_user_id: str,
    db: AsyncSession = Depends(get_db),
) -> DiscordUserResponse:
    try:
        user = await DiscordUserStore(db).deactivate(discord_user_id)
    except IdentityNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return DiscordUserResponse.model_validate(user)


@router.post("/users/{discord_user_id}/activate", response_model=DiscordUserResponse)
async def activate_user(
    discord_user_id: str,
    db: AsyncSession = Depends(get_db),
) -> DiscordUserResponse:
    try:
        user = await DiscordUserStore(db).activate(discord_user_id)
    except IdentityNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return DiscordUserResponse.model_validate(user)


@router.delete("/users/{discord_user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user(
    discord_user_id: str,
    db: AsyncSession = Depends(get_db),
) -> None:
    """Delete an identity together with its tokens and linked accounts."""
    if not await DiscordUserStore(db).delete(discord_user_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Discord user not found: {discord_user_id}",
        )
# ============================================================================
# Jobs
# ============================================================================


def _job_response(report: PassReport) -> PassReportResponse:
    if report.already_running:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job already running: {report.job}",
        )
    return PassReportResponse.from_domain(report)


@router.post("/jobs/token-maintenance", response_model=PassReportResponse)
async def trigger_token_maintenance() -> PassReportResponse:
    return _job_response(await run_token_maintenance())


@router.post("/jobs/subscriber-sync", response_model=PassReportResponse)
async def trigger_subscriber_sync() -> PassReportResponse:
    return _job_response(await run_subscriber_sync())


@router.post("/jobs/requests-upgrade", response_model=PassReportResponse)
async def trigger_requests_upgrade() -> PassReportResponse:
    return _job_response(await run_request_tier_sync())
