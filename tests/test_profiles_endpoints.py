from datetime import datetime, timedelta

import pytest

from models import Like, Profile
from routers.profiles import api as profiles_router
from routers.profiles.service import UnsetGenderPolicy, list_candidates
from utils.storage import StorageError

T0 = datetime(2026, 1, 1)


@pytest.fixture
def client(build_client):
    return build_client(profiles_router.router, user_id="alice")


@pytest.fixture
def crowd(make_profile):
    make_profile("m1", gender="male", created_at=T0 + timedelta(minutes=1))
    make_profile("m2", gender="Male", created_at=T0 + timedelta(minutes=2))
    make_profile("f1", gender="female", created_at=T0 + timedelta(minutes=3))
    make_profile("u1", gender=None, created_at=T0 + timedelta(minutes=4))


def test_get_me_creates_profile_on_first_access(client, test_db):
    response = client.get("/profiles/me")

    assert response.status_code == 200
    payload = response.json()
    assert payload["user_id"] == "alice"
    assert payload["email"] == "alice@example.com"
    assert payload["is_premium"] is False
    assert test_db.query(Profile).filter(Profile.user_id == "alice").count() == 1

    client.get("/profiles/me")
    assert test_db.query(Profile).filter(Profile.user_id == "alice").count() == 1


def test_update_normalizes_gender_and_keeps_interest_order(client):
    response = client.patch(
        "/profiles/me",
        json={"display_name": "Alice", "gender": "  Female ", "interests": ["jazz", " hiking ", "jazz", ""]},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["gender"] == "female"
    assert payload["interests"] == ["jazz", "hiking", "jazz"]

    response = client.patch("/profiles/me", json={"gender": ""})
    assert response.json()["gender"] is None
    assert response.json()["display_name"] == "Alice"


def test_update_rejects_underage(client):
    response = client.patch("/profiles/me", json={"age": 17})
    assert response.status_code == 422


def test_unknown_profile_is_404(client):
    response = client.get("/profiles/ghost")

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "not_found"


def test_discover_shows_opposite_gender_minus_liked(client, test_db, make_profile, crowd):
    make_profile("alice", gender="female")
    test_db.add(Like(liker_id="alice", liked_id="m1"))
    test_db.commit()

    response = client.get("/profiles/discover")

    assert response.status_code == 200
    assert [p["user_id"] for p in response.json()["profiles"]] == ["m2"]
    assert response.json()["has_more"] is False


def test_discover_pages_with_has_more(client, make_profile, crowd):
    make_profile("alice", gender="female")

    first = client.get("/profiles/discover", params={"limit": 1}).json()
    second = client.get("/profiles/discover", params={"limit": 1, "offset": 1}).json()

    assert [p["user_id"] for p in first["profiles"]] == ["m2"]
    assert first["has_more"] is True
    assert [p["user_id"] for p in second["profiles"]] == ["m1"]
    assert second["has_more"] is False


@pytest.mark.parametrize(
    "policy,expected",
    [
        (UnsetGenderPolicy.EVERYONE, ["u1", "f1", "m2", "m1"]),
        (UnsetGenderPolicy.NOBODY, []),
        (UnsetGenderPolicy.UNSET_ONLY, ["u1"]),
        (UnsetGenderPolicy.WITH_GENDER, ["f1", "m2", "m1"]),
    ],
)
def test_unset_gender_policies(test_db, make_profile, crowd, policy, expected):
    make_profile("alice", gender=None, created_at=T0)

    candidates = list_candidates(test_db, user_id="alice", policy=policy)

    assert [p.user_id for p in candidates] == expected


def test_avatar_upload_points_profile_at_stored_object(client, storage):
    response = client.post(
        "/profiles/me/avatar", files={"file": ("me.png", b"\x89PNG fake", "image/png")}
    )

    assert response.status_code == 200
    avatar_url = response.json()["avatar_url"]
    assert avatar_url.startswith("https://cdn.test/avatars/alice/")
    assert avatar_url.endswith(".png")
    assert len(storage.objects) == 1


def test_avatar_upload_rejects_other_types(client, storage):
    response = client.post(
        "/profiles/me/avatar", files={"file": ("notes.txt", b"hello", "text/plain")}
    )

    assert response.status_code == 400
    assert storage.objects == {}


def test_avatar_storage_failure_is_retryable(client, storage, monkeypatch):
    def broken(**kwargs):
        raise StorageError("bucket unreachable")

    monkeypatch.setattr(storage, "upload", broken)
    response = client.post(
        "/profiles/me/avatar", files={"file": ("me.jpg", b"jpeg bytes", "image/jpeg")}
    )

    assert response.status_code == 503
    assert response.json()["detail"]["retryable"] is True
