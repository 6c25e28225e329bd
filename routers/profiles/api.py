from fastapi import APIRouter, Depends, File, Query, UploadFile
from sqlalchemy.orm import Session

from auth import AuthSession
from core.config import DISCOVERY_PAGE_SIZE
from core.db import get_db
from core.errors import ServiceError, to_http_exception
from core.matches import list_liked_user_ids
from routers.dependencies import get_current_session, get_storage

from .schemas import DiscoverResponse, ProfileResponse, ProfileUpdateRequest
from .service import get_or_create_profile as service_get_or_create_profile
from .service import get_profile as service_get_profile
from .service import list_candidates as service_list_candidates
from .service import update_profile as service_update_profile
from .service import upload_avatar as service_upload_avatar

router = APIRouter(prefix="/profiles", tags=["Profiles"])


@router.get("/me", response_model=ProfileResponse)
async def get_my_profile(
    db: Session = Depends(get_db), session: AuthSession = Depends(get_current_session)
):
    """Get my profile, creating it on first access."""
    return service_get_or_create_profile(db, user_id=session.user_id, email=session.email)


@router.patch("/me", response_model=ProfileResponse)
async def update_my_profile(
    request: ProfileUpdateRequest,
    db: Session = Depends(get_db),
    session: AuthSession = Depends(get_current_session),
):
    """Update my profile."""
    return service_update_profile(db, user_id=session.user_id, request=request)


@router.post("/me/avatar", response_model=ProfileResponse)
async def upload_my_avatar(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    session: AuthSession = Depends(get_current_session),
    storage=Depends(get_storage),
):
    """Upload a new avatar image and point my profile at it."""
    data = await file.read()
    try:
        return service_upload_avatar(
            db,
            user_id=session.user_id,
            data=data,
            content_type=file.content_type or "",
            storage=storage,
        )
    except ServiceError as e:
        raise to_http_exception(e)


@router.get("/discover", response_model=DiscoverResponse)
async def discover_profiles(
    limit: int = Query(DISCOVERY_PAGE_SIZE, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    session: AuthSession = Depends(get_current_session),
):
    """Candidate profiles for swiping: excludes me and everyone I already liked."""
    liked = list_liked_user_ids(db, user_id=session.user_id)
    profiles = service_list_candidates(
        db, user_id=session.user_id, exclude_user_ids=liked, limit=limit + 1, offset=offset
    )
    return DiscoverResponse(
        profiles=profiles[:limit],
        limit=limit,
        offset=offset,
        has_more=len(profiles) > limit,
    )


@router.get("/{user_id}", response_model=ProfileResponse)
async def get_profile(
    user_id: str,
    db: Session = Depends(get_db),
    session: AuthSession = Depends(get_current_session),
):
    try:
        return service_get_profile(db, user_id=user_id)
    except ServiceError as e:
        raise to_http_exception(e)
