import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.config import (
    AVATAR_ALLOWED_CONTENT_TYPES,
    AVATAR_MAX_BYTES,
    DISCOVERY_PAGE_SIZE,
    DISCOVERY_UNSET_GENDER_POLICY,
)
from core.errors import InvalidOperation, NotFound, TransientStoreError
from core.ports.storage import ObjectStoragePort

from .repository import get_profile_by_user_id, get_profiles_by_user_ids
from .repository import list_candidates as repo_list_candidates
from .schemas import ProfileUpdateRequest

logger = logging.getLogger(__name__)


class UnsetGenderPolicy(str, Enum):
    """What discovery shows a viewer who has not declared a gender."""

    EVERYONE = "everyone"
    NOBODY = "nobody"
    UNSET_ONLY = "unset_only"
    WITH_GENDER = "with_gender"


def _configured_policy() -> UnsetGenderPolicy:
    try:
        return UnsetGenderPolicy(DISCOVERY_UNSET_GENDER_POLICY)
    except ValueError:
        logger.warning(
            f"Unknown DISCOVERY_UNSET_GENDER_POLICY={DISCOVERY_UNSET_GENDER_POLICY!r}, using 'everyone'"
        )
        return UnsetGenderPolicy.EVERYONE


def normalize_gender(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip().lower()
    return value or None


def preferred_gender(viewer_gender: Optional[str]) -> Optional[str]:
    """Gender shown to a viewer who declared one; None when the viewer has not."""
    viewer_gender = normalize_gender(viewer_gender)
    if viewer_gender is None:
        return None
    return "female" if viewer_gender == "male" else "male"


def get_profile(db: Session, *, user_id: str):
    profile = get_profile_by_user_id(db, user_id=user_id)
    if not profile:
        raise NotFound("Profile not found")
    return profile


def get_profiles(db: Session, *, user_ids: Iterable[str]):
    return get_profiles_by_user_ids(db, user_ids=user_ids)


def get_or_create_profile(db: Session, *, user_id: str, email: Optional[str] = None):
    """Return the caller's profile, creating an empty one on first access."""
    from models import Profile

    profile = get_profile_by_user_id(db, user_id=user_id)
    if profile:
        return profile

    profile = Profile(user_id=user_id, email=email, interests=[], is_premium=False)
    db.add(profile)
    try:
        db.commit()
    except IntegrityError:
        # Concurrent first login created it
        db.rollback()
        profile = get_profile_by_user_id(db, user_id=user_id)
        if profile is None:
            raise
        return profile
    db.refresh(profile)
    logger.info(f"Created profile for user {user_id}")
    return profile


def update_profile(db: Session, *, user_id: str, request: ProfileUpdateRequest):
    profile = get_or_create_profile(db, user_id=user_id)
    changes = request.model_dump(exclude_unset=True)
    for field_name, value in changes.items():
        setattr(profile, field_name, value)
    profile.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(profile)
    logger.info(f"Updated profile for user {user_id}: fields={sorted(changes)}")
    return profile


def set_premium_flag(db: Session, *, user_id: str, is_premium: bool) -> bool:
    """Mirror entitlement state onto the profile. Returns False if there is no profile."""
    profile = get_profile_by_user_id(db, user_id=user_id)
    if not profile:
        return False
    if profile.is_premium != is_premium:
        profile.is_premium = is_premium
        profile.updated_at = datetime.utcnow()
        db.commit()
    return True


def list_candidates(
    db: Session,
    *,
    user_id: str,
    exclude_user_ids: Iterable[str] = (),
    limit: int = DISCOVERY_PAGE_SIZE,
    offset: int = 0,
    policy: Optional[UnsetGenderPolicy] = None,
) -> List:
    """
    Discovery page for `user_id`: never the viewer, never anyone in
    `exclude_user_ids` (already liked), filtered by the viewer's gender.
    """
    viewer = get_profile_by_user_id(db, user_id=user_id)
    viewer_gender = normalize_gender(viewer.gender) if viewer else None
    policy = policy or _configured_policy()

    target_gender = preferred_gender(viewer_gender)
    only_unset = False
    only_with = False
    if viewer_gender is None:
        if policy == UnsetGenderPolicy.NOBODY:
            return []
        only_unset = policy == UnsetGenderPolicy.UNSET_ONLY
        only_with = policy == UnsetGenderPolicy.WITH_GENDER

    excluded = {user_id, *exclude_user_ids}
    return repo_list_candidates(
        db,
        exclude_user_ids=sorted(excluded),
        gender=target_gender,
        only_unset_gender=only_unset,
        only_with_gender=only_with,
        limit=limit,
        offset=offset,
    )


_EXTENSIONS = {"image/jpeg": "jpg", "image/png": "png", "image/webp": "webp", "image/gif": "gif"}


def upload_avatar(db: Session, *, user_id: str, data: bytes, content_type: str, storage: ObjectStoragePort):
    from utils.storage import StorageError

    if content_type not in AVATAR_ALLOWED_CONTENT_TYPES:
        raise InvalidOperation(f"Unsupported image type: {content_type}")
    if not data:
        raise InvalidOperation("Empty upload")
    if len(data) > AVATAR_MAX_BYTES:
        raise InvalidOperation(f"Image exceeds {AVATAR_MAX_BYTES} bytes")

    key = f"avatars/{user_id}/{uuid.uuid4().hex}.{_EXTENSIONS.get(content_type, 'bin')}"
    try:
        url = storage.upload(key=key, data=data, content_type=content_type)
    except StorageError as e:
        raise TransientStoreError("Avatar upload failed") from e

    profile = get_or_create_profile(db, user_id=user_id)
    profile.avatar_url = url
    profile.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(profile)
    return profile
