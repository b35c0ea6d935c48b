import uuid
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from loguru import logger

from .connection import (
    fetch_one,
    fetch_all,
    execute_query,
    execute_and_fetch_one,
    execute_and_fetch_all,
    transaction,
)
from .schemas import PostInDB, PostCounters, CommentInDB

POST_WITH_AUTHOR = """
    SELECT p.*,
           u.name AS author_name,
           u.role AS author_role,
           u.experience_level AS author_experience_level,
           u.location_state AS author_state,
           u.location_district AS author_district,
           u.is_verified AS author_is_verified,
           u.badges AS author_badges
    FROM posts p
    JOIN users u ON u.id = p.author_id
"""

COUNTER_COLUMNS = """
    id, likes_count, comments_count, shares_count, helpful_count,
    views_count, engagement_score, created_at
"""


def _exclusion_clauses(
    exclude_post_ids: Sequence[str], exclude_author_ids: Sequence[str]
) -> Tuple[List[str], List]:
    clauses: List[str] = []
    params: List = []
    if exclude_post_ids:
        clauses.append("NOT (p.id = ANY(%s::uuid[]))")
        params.append(list(exclude_post_ids))
    if exclude_author_ids:
        clauses.append("NOT (p.author_id = ANY(%s::uuid[]))")
        params.append(list(exclude_author_ids))
    return clauses, params


def get_post_by_id_db(post_id: uuid.UUID) -> Optional[PostInDB]:
    query = POST_WITH_AUTHOR + " WHERE p.id = %s AND p.is_deleted = FALSE"
    data = fetch_one(query, (str(post_id),))
    return PostInDB.model_validate(data) if data else None


def get_feed_candidates_db(
    viewer_id: Optional[uuid.UUID],
    exclude_post_ids: Sequence[str] = (),
    exclude_author_ids: Sequence[str] = (),
    crop: Optional[str] = None,
    before: Optional[datetime] = None,
    post_types: Optional[Sequence[str]] = None,
    include_reposts: bool = True,
    limit: int = 200,
    before_id: Optional[uuid.UUID] = None,
) -> List[PostInDB]:
    """Newest-first candidate pool for the home feed. ``before`` and
    ``before_id`` are the last post of the previous page; posts sharing its
    timestamp are ordered by id."""
    clauses = ["p.is_deleted = FALSE"]
    params: List = []

    exclusion, exclusion_params = _exclusion_clauses(exclude_post_ids, exclude_author_ids)
    clauses.extend(exclusion)
    params.extend(exclusion_params)

    if crop:
        clauses.append("%s ILIKE ANY(p.crops)")
        params.append(crop)
    if before and before_id:
        clauses.append("(p.created_at, p.id) < (%s, %s::uuid)")
        params.extend([before, str(before_id)])
    elif before:
        clauses.append("p.created_at < %s")
        params.append(before)
    if post_types is not None:
        clauses.append("p.post_type = ANY(%s)")
        params.append(list(post_types))
    if not include_reposts:
        clauses.append("p.is_repost = FALSE")

    query = (
        POST_WITH_AUTHOR
        + " WHERE "
        + " AND ".join(clauses)
        + " ORDER BY p.created_at DESC, p.id DESC LIMIT %s"
    )
    params.append(limit)

    data_list = fetch_all(query, tuple(params))
    logger.debug(
        f"get_feed_candidates_db: {len(data_list)} candidates for viewer {viewer_id}"
    )
    return [PostInDB.model_validate(data) for data in data_list]


def count_new_posts_since_db(
    since: datetime,
    viewer_id: Optional[uuid.UUID],
    exclude_post_ids: Sequence[str] = (),
    exclude_author_ids: Sequence[str] = (),
    post_types: Optional[Sequence[str]] = None,
) -> Tuple[int, Optional[PostInDB]]:
    clauses = ["p.is_deleted = FALSE", "p.created_at > %s"]
    params: List = [since]

    if viewer_id:
        clauses.append("p.author_id <> %s")
        params.append(str(viewer_id))

    exclusion, exclusion_params = _exclusion_clauses(exclude_post_ids, exclude_author_ids)
    clauses.extend(exclusion)
    params.extend(exclusion_params)

    if post_types is not None:
        clauses.append("p.post_type = ANY(%s)")
        params.append(list(post_types))

    where = " WHERE " + " AND ".join(clauses)

    count_row = fetch_one("SELECT COUNT(*) AS count FROM posts p" + where, tuple(params))
    count = int(count_row["count"]) if count_row else 0
    if count == 0:
        return 0, None

    latest = fetch_one(
        POST_WITH_AUTHOR + where + " ORDER BY p.created_at DESC LIMIT 1", tuple(params)
    )
    return count, PostInDB.model_validate(latest) if latest else None


def increment_views_db(post_ids: Sequence[str]) -> List[PostInDB]:
    """Atomically bumps the view counter of every live post in the batch."""
    query = """
    UPDATE posts SET views_count = views_count + 1
    WHERE id = ANY(%s::uuid[]) AND is_deleted = FALSE
    RETURNING *;
    """
    data_list = execute_and_fetch_all(query, (list(post_ids),))
    return [PostInDB.model_validate(data) for data in data_list]


def toggle_like_db(
    post_id: uuid.UUID, user_id: uuid.UUID
) -> Optional[Tuple[bool, PostCounters]]:
    """Likes the post, or unlikes it if the user already did. Returns
    (liked, counters) or None when the post does not exist."""
    with transaction() as cursor:
        cursor.execute(
            "SELECT id FROM posts WHERE id = %s AND is_deleted = FALSE FOR UPDATE",
            (str(post_id),),
        )
        if cursor.fetchone() is None:
            return None

        cursor.execute(
            """
            INSERT INTO post_likes (post_id, user_id) VALUES (%s, %s)
            ON CONFLICT DO NOTHING RETURNING post_id
            """,
            (str(post_id), str(user_id)),
        )
        liked = cursor.fetchone() is not None

        if liked:
            counter_sql = "likes_count = likes_count + 1"
        else:
            cursor.execute(
                "DELETE FROM post_likes WHERE post_id = %s AND user_id = %s",
                (str(post_id), str(user_id)),
            )
            counter_sql = "likes_count = GREATEST(likes_count - 1, 0)"

        cursor.execute(
            f"UPDATE posts SET {counter_sql} WHERE id = %s RETURNING {COUNTER_COLUMNS}",
            (str(post_id),),
        )
        row = cursor.fetchone()

    return liked, PostCounters.model_validate(row)


def increment_shares_db(post_id: uuid.UUID) -> Optional[PostCounters]:
    query = f"""
    UPDATE posts SET shares_count = shares_count + 1
    WHERE id = %s AND is_deleted = FALSE
    RETURNING {COUNTER_COLUMNS};
    """
    data = execute_and_fetch_one(query, (str(post_id),))
    return PostCounters.model_validate(data) if data else None


def create_comment_db(
    post_id: uuid.UUID, author_id: uuid.UUID, content: str
) -> Optional[Tuple[CommentInDB, PostCounters]]:
    with transaction() as cursor:
        cursor.execute(
            f"""
            UPDATE posts SET comments_count = comments_count + 1
            WHERE id = %s AND is_deleted = FALSE
            RETURNING {COUNTER_COLUMNS}
            """,
            (str(post_id),),
        )
        counters = cursor.fetchone()
        if counters is None:
            return None

        cursor.execute(
            """
            INSERT INTO post_comments (post_id, author_id, content)
            VALUES (%s, %s, %s)
            RETURNING id, post_id, author_id, content, created_at
            """,
            (str(post_id), str(author_id), content),
        )
        comment = cursor.fetchone()

    return CommentInDB.model_validate(comment), PostCounters.model_validate(counters)


def update_engagement_score_db(post_id: uuid.UUID, score: float) -> int:
    query = "UPDATE posts SET engagement_score = %s, updated_at = NOW() WHERE id = %s"
    return execute_query(query, (score, str(post_id)))
