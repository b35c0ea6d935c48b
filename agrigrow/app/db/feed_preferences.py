import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from loguru import logger
from psycopg2.extras import Json

from .connection import fetch_one, execute_and_fetch_one, transaction
from .schemas import FeedPreferenceRow

PREFERENCE_COLUMNS = """
    user_id, viewed_posts, liked_topics, liked_crops, preferred_authors,
    hidden_posts, muted_users, settings, updated_at
"""

ID_SET_COLUMNS = ("hidden_posts", "muted_users")
SCORE_COLUMNS = ("liked_topics", "liked_crops", "preferred_authors")

_ENSURE_ROW_SQL = """
INSERT INTO feed_preferences (user_id) VALUES (%s)
ON CONFLICT (user_id) DO NOTHING
"""


def get_preference_db(user_id: uuid.UUID) -> Optional[FeedPreferenceRow]:
    query = f"SELECT {PREFERENCE_COLUMNS} FROM feed_preferences WHERE user_id = %s"
    data = fetch_one(query, (str(user_id),))
    return FeedPreferenceRow.model_validate(data) if data else None


def get_or_create_preference_db(user_id: uuid.UUID) -> FeedPreferenceRow:
    query = f"""
    INSERT INTO feed_preferences (user_id) VALUES (%s)
    ON CONFLICT (user_id) DO UPDATE SET user_id = EXCLUDED.user_id
    RETURNING {PREFERENCE_COLUMNS};
    """
    data = execute_and_fetch_one(query, (str(user_id),))
    return FeedPreferenceRow.model_validate(data)


def _update_id_set(cursor, user_id: str, column: str, operation: str, ids: Sequence[str]):
    if column not in ID_SET_COLUMNS:
        raise ValueError(f"Unknown id set column: {column}")
    ids = list(dict.fromkeys(ids))
    if operation == "add":
        # Appends only ids the array does not hold yet, keeping request order
        sql = f"""
        UPDATE feed_preferences
        SET {column} = {column} || COALESCE(
                (SELECT jsonb_agg(item ORDER BY position)
                 FROM unnest(%s::text[]) WITH ORDINALITY AS t(item, position)
                 WHERE NOT ({column} ? item)),
                '[]'::jsonb),
            updated_at = NOW()
        WHERE user_id = %s
        """
        params: Tuple = (list(ids), user_id)
    elif operation == "remove":
        sql = f"""
        UPDATE feed_preferences
        SET {column} = {column} - %s::text[], updated_at = NOW()
        WHERE user_id = %s
        """
        params = (list(ids), user_id)
    elif operation == "set":
        sql = f"UPDATE feed_preferences SET {column} = %s::jsonb, updated_at = NOW() WHERE user_id = %s"
        params = (Json(list(ids)), user_id)
    else:
        raise ValueError(f"Unknown id set operation: {operation}")
    cursor.execute(sql, params)


def _bump_scores(cursor, user_id: str, column: str, deltas: Mapping[str, float]):
    """Adds each delta to the stored score, never letting it drop below zero."""
    if column not in SCORE_COLUMNS:
        raise ValueError(f"Unknown score column: {column}")
    pairs: List[str] = []
    params: List[Any] = []
    for key, delta in deltas.items():
        pairs.append(f"%s::text, GREATEST(0, COALESCE(({column} ->> %s)::float8, 0) + %s::float8)")
        params.extend([key, key, float(delta)])
    params.append(user_id)
    cursor.execute(
        f"""
        UPDATE feed_preferences
        SET {column} = {column} || jsonb_build_object({", ".join(pairs)}), updated_at = NOW()
        WHERE user_id = %s
        """,
        tuple(params),
    )


def apply_preference_changes_db(
    user_id: uuid.UUID,
    id_sets: Optional[Mapping[str, Tuple[str, Sequence[str]]]] = None,
    scores: Optional[Mapping[str, Mapping[str, float]]] = None,
    settings: Optional[Dict[str, Any]] = None,
) -> FeedPreferenceRow:
    """Applies targeted updates to a user's preference row in one transaction.

    ``id_sets`` maps ``hidden_posts``/``muted_users`` to an (operation, ids)
    pair, ``scores`` maps an affinity column to per-key deltas and
    ``settings`` is merged into the stored settings object. Columns that are
    not named are never written.
    """
    key = str(user_id)
    with transaction() as cursor:
        cursor.execute(_ENSURE_ROW_SQL, (key,))
        for column, (operation, ids) in (id_sets or {}).items():
            _update_id_set(cursor, key, column, operation, ids)
        for column, deltas in (scores or {}).items():
            if deltas:
                _bump_scores(cursor, key, column, deltas)
        if settings:
            cursor.execute(
                "UPDATE feed_preferences SET settings = settings || %s::jsonb, updated_at = NOW() WHERE user_id = %s",
                (Json(settings), key),
            )
        cursor.execute(
            f"SELECT {PREFERENCE_COLUMNS} FROM feed_preferences WHERE user_id = %s", (key,)
        )
        data = cursor.fetchone()

    logger.trace(
        f"apply_preference_changes_db: user {user_id} id_sets={list((id_sets or {}).keys())} "
        f"scores={list((scores or {}).keys())} settings={bool(settings)}"
    )
    return FeedPreferenceRow.model_validate(data)


def update_viewed_posts_db(
    user_id: uuid.UUID,
    merge: Callable[[List[Dict[str, Any]]], List[Dict[str, Any]]],
) -> FeedPreferenceRow:
    """Rewrites the view history under a row lock. ``merge`` receives the
    stored entries and returns the new list; no other column is written."""
    key = str(user_id)
    with transaction() as cursor:
        cursor.execute(_ENSURE_ROW_SQL, (key,))
        cursor.execute(
            "SELECT viewed_posts FROM feed_preferences WHERE user_id = %s FOR UPDATE", (key,)
        )
        current = cursor.fetchone()["viewed_posts"] or []
        cursor.execute(
            f"""
            UPDATE feed_preferences SET viewed_posts = %s, updated_at = NOW()
            WHERE user_id = %s
            RETURNING {PREFERENCE_COLUMNS}
            """,
            (Json(merge(list(current))), key),
        )
        data = cursor.fetchone()
    return FeedPreferenceRow.model_validate(data)
