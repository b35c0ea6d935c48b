import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from agrigrow.app.config import FeedConfig
from agrigrow.app.db import feed_preferences as preferences_db
from agrigrow.app.db import posts as posts_db
from agrigrow.app.db import users as users_db
from agrigrow.app.db.schemas import FeedPreferenceRow, PostCounters
from agrigrow.app.main import create_app
from agrigrow.app.services.feed_service import FeedService

VIEWER_PHONE = {"x-user-phone": "98765 43210"}


class FakeFeedDb:
    def __init__(self):
        self.users = {}
        self.posts = []
        self.preferences = {}
        self.likes = set()

    def install(self, monkeypatch):
        monkeypatch.setattr(users_db, "get_user_by_phone", self.user_by_phone)
        monkeypatch.setattr(users_db, "get_user_by_id", lambda user_id: self.users.get(user_id))
        monkeypatch.setattr(users_db, "get_users_by_ids_db", self.users_by_ids)
        monkeypatch.setattr(preferences_db, "get_preference_db", self.get_preference)
        monkeypatch.setattr(preferences_db, "get_or_create_preference_db", self.get_or_create)
        monkeypatch.setattr(preferences_db, "apply_preference_changes_db", self.apply_changes)
        monkeypatch.setattr(preferences_db, "update_viewed_posts_db", self.update_viewed_posts)
        monkeypatch.setattr(posts_db, "get_feed_candidates_db", self.candidates)
        monkeypatch.setattr(posts_db, "count_new_posts_since_db", self.count_new)
        monkeypatch.setattr(posts_db, "get_post_by_id_db", self.post_by_id)
        monkeypatch.setattr(posts_db, "increment_views_db", self.increment_views)
        monkeypatch.setattr(posts_db, "toggle_like_db", self.toggle_like)
        monkeypatch.setattr(posts_db, "update_engagement_score_db", lambda post_id, score: 1)

    # users
    def add_user(self, user):
        self.users[user.id] = user
        return user

    def user_by_phone(self, phone):
        return next((u for u in self.users.values() if u.phone == phone), None)

    def users_by_ids(self, ids):
        return [u for u in self.users.values() if str(u.id) in ids]

    # preferences
    def get_preference(self, user_id):
        return self.preferences.get(str(user_id))

    def get_or_create(self, user_id):
        return self.preferences.setdefault(str(user_id), FeedPreferenceRow(user_id=user_id))

    def apply_changes(self, user_id, id_sets=None, scores=None, settings=None):
        data = self.get_or_create(user_id).model_dump()
        for column, (operation, ids) in (id_sets or {}).items():
            current = list(data[column])
            if operation == "add":
                current += [i for i in dict.fromkeys(ids) if i not in current]
            elif operation == "remove":
                current = [i for i in current if i not in ids]
            else:
                current = list(dict.fromkeys(ids))
            data[column] = current
        for column, deltas in (scores or {}).items():
            merged = dict(data[column])
            for key, delta in deltas.items():
                merged[key] = max(0.0, merged.get(key, 0.0) + delta)
            data[column] = merged
        if settings:
            data["settings"] = {**data["settings"], **settings}
        row = FeedPreferenceRow(**data)
        self.preferences[str(user_id)] = row
        return row

    def update_viewed_posts(self, user_id, merge):
        row = self.get_or_create(user_id)
        row = row.model_copy(update={"viewed_posts": merge(list(row.viewed_posts))})
        self.preferences[str(user_id)] = row
        return row

    # posts
    def post_by_id(self, post_id):
        return next((p for p in self.posts if p.id == post_id), None)

    def candidates(
        self, viewer_id, exclude_post_ids, exclude_author_ids, crop, before, post_types,
        include_reposts, limit, before_id=None,
    ):
        def before_cursor(p):
            if before is None:
                return True
            if before_id is None:
                return p.created_at < before
            return (p.created_at, str(p.id)) < (before, str(before_id))

        pool = [
            p
            for p in self.posts
            if str(p.id) not in exclude_post_ids
            and str(p.author_id) not in exclude_author_ids
            and before_cursor(p)
            and (post_types is None or p.post_type in post_types)
        ]
        pool.sort(key=lambda p: (p.created_at, str(p.id)), reverse=True)
        return pool[:limit]

    def count_new(self, since, viewer_id, exclude_post_ids, exclude_author_ids, post_types):
        newer = [
            p
            for p in self.candidates(
                viewer_id, exclude_post_ids, exclude_author_ids, None, None, post_types, True, 1000
            )
            if p.created_at > since
        ]
        return len(newer), (newer[0] if newer else None)

    def increment_views(self, ids):
        return [p for p in self.posts if str(p.id) in ids]

    def toggle_like(self, post_id, user_id):
        post = self.post_by_id(post_id)
        key = (post_id, user_id)
        liked = key not in self.likes
        if liked:
            self.likes.add(key)
        else:
            self.likes.discard(key)
        post.likes_count += 1 if liked else -1
        return liked, PostCounters(
            id=post.id,
            likes_count=post.likes_count,
            comments_count=post.comments_count,
            shares_count=post.shares_count,
            helpful_count=post.helpful_count,
            views_count=post.views_count,
            engagement_score=post.engagement_score,
            created_at=post.created_at,
        )


@pytest.fixture
def db(monkeypatch):
    fake = FakeFeedDb()
    fake.install(monkeypatch)
    return fake


@pytest.fixture
def viewer(db, make_user):
    return db.add_user(make_user())


@pytest.fixture
def client(db):
    app = create_app(with_lifecycle=False)
    app.state.feed_service = FeedService(FeedConfig())
    return TestClient(app)


def hours_ago(hours):
    return datetime.now(timezone.utc) - timedelta(hours=hours)


class TestAuth:
    def test_preferences_require_a_phone(self, client):
        response = client.get("/api/v1/feed/preferences")
        assert response.status_code == 401
        assert response.json()["error_code"] == "UNAUTHORIZED"

    def test_unknown_phone(self, client, db):
        response = client.get("/api/v1/feed/preferences", headers={"x-user-phone": "1112223333"})
        assert response.status_code == 404


class TestHomeFeed:
    def test_muted_authors_and_hidden_posts_never_appear(self, client, db, viewer, make_post, make_user):
        muted = db.add_user(make_user(phone="9000000001", name="Loud"))
        keep = make_post()
        hidden = make_post()
        db.posts = [keep, hidden, make_post(author_id=muted.id)]
        db.preferences[str(viewer.id)] = FeedPreferenceRow(
            user_id=viewer.id, muted_users=[str(muted.id)], hidden_posts=[str(hidden.id)]
        )

        data = client.get("/api/v1/feed", headers=VIEWER_PHONE).json()["data"]
        assert [p["id"] for p in data["posts"]] == [str(keep.id)]
        assert data["posts"][0]["has_viewed"] is False

    def test_cursor_pagination(self, client, db, make_post):
        db.posts = [make_post(created_at=hours_ago(h)) for h in (1, 2, 3)]

        first = client.get("/api/v1/feed", params={"limit": 2}).json()["data"]
        assert first["has_more"] is True
        assert len(first["posts"]) == 2

        second = client.get(
            "/api/v1/feed", params={"limit": 2, "cursor": first["next_cursor"]}
        ).json()["data"]
        assert second["has_more"] is False
        assert [p["id"] for p in second["posts"]] == [str(db.posts[2].id)]

    def test_posts_sharing_the_boundary_timestamp_are_not_skipped(self, client, db, make_post):
        same_time = hours_ago(1)
        db.posts = [make_post(created_at=same_time) for _ in range(3)]

        seen = []
        cursor = None
        for _ in range(3):
            params = {"limit": 1}
            if cursor:
                params["cursor"] = cursor
            page = client.get("/api/v1/feed", params=params).json()["data"]
            seen.extend(p["id"] for p in page["posts"])
            cursor = page["next_cursor"]

        assert sorted(seen) == sorted(str(p.id) for p in db.posts)
        assert cursor is None

    def test_category_maps_to_post_types(self, client, db, make_post):
        tip = make_post(post_type="tip")
        db.posts = [tip, make_post(post_type="question")]

        data = client.get("/api/v1/feed", params={"category": "tips"}).json()["data"]
        assert [p["id"] for p in data["posts"]] == [str(tip.id)]

    def test_bad_cursor(self, client, db):
        response = client.get("/api/v1/feed", params={"cursor": "last tuesday"})
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid cursor"


class TestNewPostsCount:
    def test_since_is_required(self, client, db):
        response = client.get("/api/v1/feed/new-posts-count")
        assert response.status_code == 400

    def test_since_must_parse(self, client, db):
        response = client.get("/api/v1/feed/new-posts-count", params={"since": "yesterday"})
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid timestamp format"

    def test_viewed_posts_are_not_new(self, client, db, viewer, make_post):
        seen, fresh = make_post(created_at=hours_ago(1)), make_post(created_at=hours_ago(0.5))
        db.posts = [seen, fresh]
        db.preferences[str(viewer.id)] = FeedPreferenceRow(
            user_id=viewer.id, viewed_posts=[{"post_id": str(seen.id), "view_duration": 3.0}]
        )
        since_ms = str(int(hours_ago(2).timestamp() * 1000))

        data = client.get(
            "/api/v1/feed/new-posts-count", params={"since": since_ms}, headers=VIEWER_PHONE
        ).json()["data"]
        assert data["count"] == 1
        assert data["latest_post"]["id"] == str(fresh.id)


class TestPreferences:
    def test_update_lists_scores_and_settings(self, client, db, viewer):
        post_id = str(uuid.uuid4())
        response = client.put(
            "/api/v1/feed/preferences",
            headers=VIEWER_PHONE,
            json={
                "hidden_posts": {"operation": "add", "ids": [post_id]},
                "liked_crops": {"Wheat": 2.0},
                "settings": {"show_reposts": False},
            },
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["hidden_posts"] == [post_id]
        assert data["liked_crops"] == {"wheat": 2.0}
        assert data["settings"]["show_reposts"] is False
        assert data["viewed_posts_count"] == 0
        assert "viewed_posts" not in data

    def test_invalid_update_lists_field_errors(self, client, db, viewer):
        response = client.put(
            "/api/v1/feed/preferences",
            headers=VIEWER_PHONE,
            json={"muted_users": {"operation": "toggle", "ids": ["not-a-uuid"]}},
        )
        assert response.status_code == 400
        body = response.json()
        assert body["error_code"] == "VALIDATION_ERROR"
        fields = {error["field"] for error in body["fields"]}
        assert "muted_users.operation" in fields

    def test_hide_and_unhide(self, client, db, viewer):
        post_id = str(uuid.uuid4())
        hidden = client.post(
            "/api/v1/feed/preferences/hide", headers=VIEWER_PHONE, json={"postId": post_id}
        ).json()["data"]
        assert hidden["hidden_posts"] == [post_id]

        shown = client.delete(f"/api/v1/feed/preferences/hide/{post_id}", headers=VIEWER_PHONE)
        assert shown.json()["data"]["hidden_posts"] == []


class TestMute:
    def test_cannot_mute_yourself(self, client, db, viewer):
        response = client.post(
            "/api/v1/feed/mute", headers=VIEWER_PHONE, json={"userId": str(viewer.id)}
        )
        assert response.status_code == 400

    def test_mute_and_list(self, client, db, viewer, make_user):
        other = db.add_user(make_user(phone="9000000002", name="Suresh"))
        client.post("/api/v1/feed/mute", headers=VIEWER_PHONE, json={"userId": str(other.id)})

        listing = client.get("/api/v1/feed/mute/list", headers=VIEWER_PHONE).json()["data"]
        assert listing["count"] == 1
        assert listing["users"][0]["name"] == "Suresh"

        client.delete(f"/api/v1/feed/mute/{other.id}", headers=VIEWER_PHONE)
        assert client.get("/api/v1/feed/mute/list", headers=VIEWER_PHONE).json()["data"]["count"] == 0

    def test_mute_unknown_user(self, client, db, viewer):
        response = client.post(
            "/api/v1/feed/mute", headers=VIEWER_PHONE, json={"userId": str(uuid.uuid4())}
        )
        assert response.status_code == 404


class TestPostInteractions:
    def test_track_views_rejects_only_garbage_ids(self, client, db, viewer):
        response = client.post(
            "/api/v1/posts/track-views", headers=VIEWER_PHONE, json={"postIds": ["abc", "123"]}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "No valid post IDs provided"

    def test_long_views_build_affinity(self, client, db, viewer, make_post):
        post = make_post(post_type="tip", crops=["Cotton"])
        db.posts = [post]

        response = client.post(
            "/api/v1/posts/track-views",
            headers=VIEWER_PHONE,
            json={"postIds": [str(post.id), "junk"], "durations": {str(post.id): 12}},
        )
        assert response.json()["data"] == {"processed": 1, "modified_count": 1}

        row = db.preferences[str(viewer.id)]
        assert row.viewed_posts[0]["post_id"] == str(post.id)
        assert row.liked_crops == {"cotton": 0.5}

    def test_like_toggles(self, client, db, viewer, make_post):
        post = make_post()
        db.posts = [post]
        url = f"/api/v1/posts/{post.id}/like"

        first = client.post(url, headers=VIEWER_PHONE).json()["data"]
        second = client.post(url, headers=VIEWER_PHONE).json()["data"]
        assert (first["liked"], first["likes_count"]) == (True, 1)
        assert (second["liked"], second["likes_count"]) == (False, 0)
        assert db.preferences[str(viewer.id)].liked_topics == {"question": 1.0}

    def test_like_missing_post(self, client, db, viewer):
        response = client.post(f"/api/v1/posts/{uuid.uuid4()}/like", headers=VIEWER_PHONE)
        assert response.status_code == 404

    @pytest.mark.parametrize("content", ["", "   ", "\n\t"])
    def test_blank_comment_is_rejected(self, client, db, viewer, make_post, content):
        post = make_post()
        db.posts = [post]

        response = client.post(
            f"/api/v1/posts/{post.id}/comments", headers=VIEWER_PHONE, json={"content": content}
        )
        assert response.status_code == 400
        body = response.json()
        assert body["error_code"] == "VALIDATION_ERROR"
        assert body["fields"][0]["field"] == "content"


class TestConcurrentPreferenceWrites:
    def test_view_tracking_keeps_a_hide_committed_mid_request(self, db, viewer, make_post, monkeypatch):
        post = make_post(post_type="tip", crops=["Cotton"])
        db.posts = [post]
        hidden_id = str(uuid.uuid4())
        write_history = db.update_viewed_posts

        def history_then_concurrent_hide(user_id, merge):
            stale = write_history(user_id, merge)
            db.apply_changes(user_id, id_sets={"hidden_posts": ("add", [hidden_id])})
            return stale

        monkeypatch.setattr(preferences_db, "update_viewed_posts_db", history_then_concurrent_hide)

        service = FeedService(FeedConfig())
        asyncio.run(service.track_views(viewer, [str(post.id)], {str(post.id): 15}))

        row = db.preferences[str(viewer.id)]
        assert row.hidden_posts == [hidden_id]
        assert [v["post_id"] for v in row.viewed_posts] == [str(post.id)]
        assert row.liked_crops == {"cotton": 0.5}

    def test_view_history_respects_configured_limit(self, db, viewer, make_post):
        db.posts = [make_post() for _ in range(3)]
        service = FeedService(FeedConfig(viewed_posts_limit=2))

        asyncio.run(service.track_views(viewer, [str(p.id) for p in db.posts]))

        row = db.preferences[str(viewer.id)]
        assert [v["post_id"] for v in row.viewed_posts] == [str(p.id) for p in db.posts[1:]]
