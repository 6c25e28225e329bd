from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from auth import AuthSession
from core.db import get_db
from core.errors import ServiceError, to_http_exception
from core.profiles import get_profiles_by_user_ids
from routers.dependencies import get_change_feed, get_current_session

from .schemas import LikeRequest, LikeResponse, MatchItem, MatchListResponse, SentLike
from .service import LikeResult
from .service import list_matches as service_list_matches
from .service import list_sent_likes as service_list_sent_likes
from .service import record_like as service_record_like

router = APIRouter(prefix="/matches", tags=["Matches"])


@router.post("/likes", response_model=LikeResponse)
async def like_user(
    request: LikeRequest,
    db: Session = Depends(get_db),
    session: AuthSession = Depends(get_current_session),
    feed=Depends(get_change_feed),
):
    """Like a profile. Liking the same profile twice answers `already_liked`."""
    try:
        result = await service_record_like(
            db, liker_id=session.user_id, liked_id=request.target_user_id, feed=feed
        )
    except ServiceError as e:
        raise to_http_exception(e)
    return LikeResponse(
        target_user_id=request.target_user_id,
        result=result.value,
        is_match=result == LikeResult.MUTUAL_MATCH,
    )


@router.get("/likes", response_model=List[SentLike])
async def list_my_likes(
    db: Session = Depends(get_db), session: AuthSession = Depends(get_current_session)
):
    likes = service_list_sent_likes(db, user_id=session.user_id)
    return [SentLike(user_id=l.liked_id, status=l.status, created_at=l.created_at) for l in likes]


@router.get("", response_model=MatchListResponse)
async def list_my_matches(
    db: Session = Depends(get_db), session: AuthSession = Depends(get_current_session)
):
    """Everyone I matched with, newest match first."""
    matches = service_list_matches(db, user_id=session.user_id)
    profiles = get_profiles_by_user_ids(db, user_ids=[user_id for user_id, _ in matches])
    items = []
    for user_id, matched_at in matches:
        profile = profiles.get(user_id)
        items.append(
            MatchItem(
                user_id=user_id,
                matched_at=matched_at,
                display_name=profile.display_name if profile else None,
                avatar_url=profile.avatar_url if profile else None,
                is_premium=bool(profile.is_premium) if profile else False,
            )
        )
    return MatchListResponse(matches=items)
