import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

import pytest

from agrigrow.app.db import feed_preferences as preferences_db
from agrigrow.app.db import group_posts as group_posts_db
from agrigrow.app.db import posts as posts_db

GROUP_ID = uuid.uuid4()
POST_ID = uuid.uuid4()
USER_ID = uuid.uuid4()


class RecordingCursor:
    """Collects executed statements and hands out queued rows to fetchone."""

    def __init__(self, rows=()):
        self.rows = list(rows)
        self.statements = []
        self.committed = False

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))

    def fetchone(self):
        return self.rows.pop(0) if self.rows else None

    def sql(self, prefix=""):
        return [s for s, _ in self.statements if s.startswith(prefix)]


@pytest.fixture
def cursor_for(monkeypatch):
    def _install(module, rows=()):
        cursor = RecordingCursor(rows)

        @contextmanager
        def fake_transaction():
            yield cursor
            cursor.committed = True

        monkeypatch.setattr(module, "transaction", fake_transaction)
        return cursor

    return _install


def group_post_row(status):
    return {
        "id": POST_ID,
        "group_id": GROUP_ID,
        "author_id": USER_ID,
        "content": "Drip irrigation subsidy is open",
        "post_type": "discussion",
        "status": status,
        "approved_by": None,
        "approved_at": None,
        "is_deleted": False,
        "created_at": datetime(2025, 1, 15, tzinfo=timezone.utc),
    }


def counter_updates(cursor):
    return [params for sql, params in cursor.statements if sql.startswith("UPDATE groups SET post_count")]


class TestGroupPostCounter:
    def test_approved_create_counts_once(self, cursor_for):
        cursor = cursor_for(group_posts_db, rows=[group_post_row("approved")])
        group_posts_db.create_group_post_db(GROUP_ID, USER_ID, "hi", "discussion", "approved")

        assert counter_updates(cursor) == [(1, str(GROUP_ID))]
        assert cursor.committed

    def test_pending_create_does_not_count(self, cursor_for):
        cursor = cursor_for(group_posts_db, rows=[group_post_row("pending_approval")])
        post = group_posts_db.create_group_post_db(
            GROUP_ID, USER_ID, "hi", "discussion", "pending_approval"
        )

        assert post.status == "pending_approval"
        assert counter_updates(cursor) == []

    def test_approval_is_conditional_on_pending_and_counts_once(self, cursor_for):
        cursor = cursor_for(group_posts_db, rows=[group_post_row("approved")])
        approved = group_posts_db.approve_group_post_db(GROUP_ID, POST_ID, USER_ID)

        update = cursor.sql("UPDATE group_posts")[0]
        assert "status = 'pending_approval'" in update
        assert "is_deleted = FALSE" in update
        assert approved.status == "approved"
        assert counter_updates(cursor) == [(1, str(GROUP_ID))]

    def test_losing_approval_race_leaves_counter_alone(self, cursor_for):
        cursor = cursor_for(group_posts_db, rows=[])
        assert group_posts_db.approve_group_post_db(GROUP_ID, POST_ID, USER_ID) is None
        assert counter_updates(cursor) == []

    def test_reject_never_touches_counter(self, cursor_for):
        row = dict(group_post_row("rejected"), is_deleted=True)
        cursor = cursor_for(group_posts_db, rows=[row])
        rejected = group_posts_db.reject_group_post_db(GROUP_ID, POST_ID)

        update = cursor.sql("UPDATE group_posts")[0]
        assert "SET status = 'rejected', is_deleted = TRUE" in update
        assert "status = 'pending_approval'" in update
        assert rejected.is_deleted
        assert counter_updates(cursor) == []

    @pytest.mark.parametrize(
        "status, expected",
        [("approved", [(-1, str(GROUP_ID))]), ("pending_approval", [])],
    )
    def test_delete_decrements_only_approved_posts(self, cursor_for, status, expected):
        cursor = cursor_for(group_posts_db, rows=[dict(group_post_row(status), is_deleted=True)])
        group_posts_db.soft_delete_group_post_db(GROUP_ID, POST_ID)
        assert counter_updates(cursor) == expected

    def test_counter_never_goes_negative(self):
        assert "GREATEST(post_count + %s, 0)" in group_posts_db._POST_COUNT_SQL


class TestGroupPostListing:
    @pytest.fixture
    def captured(self, monkeypatch):
        calls = []

        def fake_fetch_one(query, params=None):
            calls.append((" ".join(query.split()), params))
            return {"count": 0}

        def fake_fetch_all(query, params=None):
            calls.append((" ".join(query.split()), params))
            return []

        monkeypatch.setattr(group_posts_db, "fetch_one", fake_fetch_one)
        monkeypatch.setattr(group_posts_db, "fetch_all", fake_fetch_all)
        return calls

    def test_members_see_approved_and_their_own(self, captured):
        group_posts_db.list_group_posts_db(GROUP_ID, viewer_id=USER_ID)
        query, params = captured[1]
        assert "is_deleted = FALSE" in query
        assert "(status = 'approved' OR author_id = %s)" in query
        assert params == (str(GROUP_ID), str(USER_ID), 20, 0)

    def test_anonymous_sees_approved_only(self, captured):
        group_posts_db.list_group_posts_db(GROUP_ID, post_type="question", limit=5, offset=10)
        count_query, _ = captured[0]
        assert "status = 'approved'" in count_query
        assert "author_id" not in count_query
        _, params = captured[1]
        assert params == (str(GROUP_ID), "question", 5, 10)

    def test_moderators_see_the_queue(self, captured):
        group_posts_db.list_group_posts_db(GROUP_ID, viewer_id=USER_ID, include_pending=True)
        query, _ = captured[0]
        assert "status" not in query
        assert "is_deleted = FALSE" in query


class TestFeedQueries:
    @pytest.fixture
    def captured(self, monkeypatch):
        calls = []

        def fake_fetch_all(query, params=None):
            calls.append((" ".join(query.split()), params))
            return []

        def fake_fetch_one(query, params=None):
            calls.append((" ".join(query.split()), params))
            return {"count": 0}

        monkeypatch.setattr(posts_db, "fetch_all", fake_fetch_all)
        monkeypatch.setattr(posts_db, "fetch_one", fake_fetch_one)
        return calls

    def test_hidden_posts_and_muted_authors_are_excluded(self, captured):
        hidden, muted = str(uuid.uuid4()), str(uuid.uuid4())
        posts_db.get_feed_candidates_db(USER_ID, [hidden], [muted], limit=21)

        query, params = captured[0]
        assert "NOT (p.id = ANY(%s::uuid[]))" in query
        assert "NOT (p.author_id = ANY(%s::uuid[]))" in query
        assert params == ([hidden], [muted], 21)

    def test_no_exclusion_clauses_without_lists(self, captured):
        posts_db.get_feed_candidates_db(None)
        query, _ = captured[0]
        assert "NOT (" not in query

    def test_compound_cursor_breaks_timestamp_ties_by_id(self, captured):
        boundary = datetime(2025, 1, 15, 8, 30, tzinfo=timezone.utc)
        posts_db.get_feed_candidates_db(None, before=boundary, before_id=POST_ID, limit=3)

        query, params = captured[0]
        assert "(p.created_at, p.id) < (%s, %s::uuid)" in query
        assert query.endswith("ORDER BY p.created_at DESC, p.id DESC LIMIT %s")
        assert params == (boundary, str(POST_ID), 3)

    def test_new_posts_count_skips_own_hidden_and_muted(self, captured):
        since = datetime(2025, 1, 15, tzinfo=timezone.utc)
        hidden, muted = str(uuid.uuid4()), str(uuid.uuid4())
        count, latest = posts_db.count_new_posts_since_db(since, USER_ID, [hidden], [muted])

        query, params = captured[0]
        assert "p.author_id <> %s" in query
        assert "NOT (p.id = ANY(%s::uuid[]))" in query
        assert "NOT (p.author_id = ANY(%s::uuid[]))" in query
        assert params == (since, str(USER_ID), [hidden], [muted])
        assert (count, latest) == (0, None)


class TestPreferenceWrites:
    def preference_row(self, **overrides):
        return dict({"user_id": USER_ID}, **overrides)

    def updates(self, cursor):
        return [(sql, params) for sql, params in cursor.statements if sql.startswith("UPDATE")]

    def test_hide_appends_without_touching_other_columns(self, cursor_for):
        post_id = str(uuid.uuid4())
        cursor = cursor_for(preferences_db, rows=[self.preference_row(hidden_posts=[post_id])])

        row = preferences_db.apply_preference_changes_db(
            USER_ID, id_sets={"hidden_posts": ("add", [post_id, post_id])}
        )

        assert cursor.sql("INSERT INTO feed_preferences")
        [(sql, params)] = self.updates(cursor)
        assert sql.startswith("UPDATE feed_preferences SET hidden_posts = hidden_posts || COALESCE(")
        assert "NOT (hidden_posts ? item)" in sql
        for other in ("muted_users", "viewed_posts", "liked_", "settings"):
            assert other not in sql
        assert params == ([post_id], str(USER_ID))
        assert row.hidden_posts == [post_id]

    def test_unmute_removes_in_place(self, cursor_for):
        user = str(uuid.uuid4())
        cursor = cursor_for(preferences_db, rows=[self.preference_row()])
        preferences_db.apply_preference_changes_db(
            USER_ID, id_sets={"muted_users": ("remove", [user])}
        )

        [(sql, params)] = self.updates(cursor)
        assert "SET muted_users = muted_users - %s::text[]" in sql
        assert "hidden_posts" not in sql
        assert params == ([user], str(USER_ID))

    def test_score_bumps_are_clamped_increments(self, cursor_for):
        cursor = cursor_for(preferences_db, rows=[self.preference_row()])
        preferences_db.apply_preference_changes_db(
            USER_ID, scores={"liked_crops": {"wheat": 0.5, "rice": -1.0}, "liked_topics": {}}
        )

        [(sql, params)] = self.updates(cursor)
        assert "SET liked_crops = liked_crops || jsonb_build_object(" in sql
        assert sql.count("GREATEST(0, COALESCE((liked_crops ->> %s)::float8, 0) + %s::float8)") == 2
        for other in ("hidden_posts", "muted_users", "viewed_posts"):
            assert other not in sql
        assert params == ("wheat", "wheat", 0.5, "rice", "rice", -1.0, str(USER_ID))

    def test_settings_are_merged(self, cursor_for):
        cursor = cursor_for(preferences_db, rows=[self.preference_row()])
        preferences_db.apply_preference_changes_db(USER_ID, settings={"show_reposts": False})

        [(sql, params)] = self.updates(cursor)
        assert "SET settings = settings || %s::jsonb" in sql
        assert params[0].adapted == {"show_reposts": False}

    def test_unknown_columns_are_refused(self, cursor_for):
        cursor_for(preferences_db, rows=[self.preference_row()])
        with pytest.raises(ValueError):
            preferences_db.apply_preference_changes_db(
                USER_ID, id_sets={"viewed_posts": ("set", [])}
            )

    def test_view_history_is_locked_and_written_alone(self, cursor_for):
        stored = [{"post_id": "a", "view_duration": 1.0}]
        cursor = cursor_for(
            preferences_db,
            rows=[{"viewed_posts": stored}, self.preference_row(viewed_posts=stored)],
        )
        seen = []

        def merge(viewed_posts):
            seen.append(viewed_posts)
            return viewed_posts + [{"post_id": "b", "view_duration": 2.0}]

        preferences_db.update_viewed_posts_db(USER_ID, merge)

        assert seen == [stored]
        assert cursor.sql("SELECT viewed_posts FROM feed_preferences")[0].endswith("FOR UPDATE")
        [(sql, params)] = self.updates(cursor)
        assert sql.split(" WHERE ")[0] == (
            "UPDATE feed_preferences SET viewed_posts = %s, updated_at = NOW()"
        )
        assert [v["post_id"] for v in params[0].adapted] == ["a", "b"]
        assert cursor.committed
