import uuid
from typing import List, Optional, Tuple

from loguru import logger

from .connection import fetch_one, fetch_all, transaction
from .schemas import GroupPostInDB

GROUP_POST_COLUMNS = """
    id, group_id, author_id, content, post_type, status, approved_by,
    approved_at, is_deleted, created_at
"""

_POST_COUNT_SQL = "UPDATE groups SET post_count = GREATEST(post_count + %s, 0) WHERE id = %s"


def get_group_post_db(group_id: uuid.UUID, post_id: uuid.UUID) -> Optional[GroupPostInDB]:
    query = f"""
    SELECT {GROUP_POST_COLUMNS} FROM group_posts
    WHERE id = %s AND group_id = %s AND is_deleted = FALSE
    """
    data = fetch_one(query, (str(post_id), str(group_id)))
    return GroupPostInDB.model_validate(data) if data else None


def list_group_posts_db(
    group_id: uuid.UUID,
    viewer_id: Optional[uuid.UUID] = None,
    include_pending: bool = False,
    post_type: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
) -> Tuple[int, List[GroupPostInDB]]:
    """Live posts of a group, newest first, with the total match count.
    Unless ``include_pending`` is set only approved posts are returned, plus
    the viewer's own posts still waiting for approval."""
    clauses = ["group_id = %s", "is_deleted = FALSE"]
    params: List = [str(group_id)]

    if not include_pending:
        if viewer_id:
            clauses.append("(status = 'approved' OR author_id = %s)")
            params.append(str(viewer_id))
        else:
            clauses.append("status = 'approved'")
    if post_type:
        clauses.append("post_type = %s")
        params.append(post_type)

    where = " WHERE " + " AND ".join(clauses)
    count_row = fetch_one("SELECT COUNT(*) AS count FROM group_posts" + where, tuple(params))
    total = int(count_row["count"]) if count_row else 0

    query = (
        f"SELECT {GROUP_POST_COLUMNS} FROM group_posts"
        + where
        + " ORDER BY created_at DESC, id DESC LIMIT %s OFFSET %s"
    )
    rows = fetch_all(query, tuple(params) + (limit, offset))
    return total, [GroupPostInDB.model_validate(row) for row in rows]


def create_group_post_db(
    group_id: uuid.UUID,
    author_id: uuid.UUID,
    content: str,
    post_type: str,
    status: str,
) -> GroupPostInDB:
    """Inserts the post; an immediately approved post counts towards the
    group's post total in the same transaction."""
    with transaction() as cursor:
        cursor.execute(
            f"""
            INSERT INTO group_posts (group_id, author_id, content, post_type, status)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING {GROUP_POST_COLUMNS}
            """,
            (str(group_id), str(author_id), content, post_type, status),
        )
        row = cursor.fetchone()
        if status == "approved":
            cursor.execute(_POST_COUNT_SQL, (1, str(group_id)))

    logger.success(f"create_group_post_db: post {row['id']} created with status {status}")
    return GroupPostInDB.model_validate(row)


def approve_group_post_db(
    group_id: uuid.UUID, post_id: uuid.UUID, approver_id: uuid.UUID
) -> Optional[GroupPostInDB]:
    """Moves a pending post to approved. Returns None when the post was not
    pending, so concurrent approvals increment the counter only once."""
    with transaction() as cursor:
        cursor.execute(
            f"""
            UPDATE group_posts
            SET status = 'approved', approved_by = %s, approved_at = NOW()
            WHERE id = %s AND group_id = %s
              AND status = 'pending_approval' AND is_deleted = FALSE
            RETURNING {GROUP_POST_COLUMNS}
            """,
            (str(approver_id), str(post_id), str(group_id)),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        cursor.execute(_POST_COUNT_SQL, (1, str(group_id)))

    return GroupPostInDB.model_validate(row)


def reject_group_post_db(group_id: uuid.UUID, post_id: uuid.UUID) -> Optional[GroupPostInDB]:
    with transaction() as cursor:
        cursor.execute(
            f"""
            UPDATE group_posts
            SET status = 'rejected', is_deleted = TRUE
            WHERE id = %s AND group_id = %s
              AND status = 'pending_approval' AND is_deleted = FALSE
            RETURNING {GROUP_POST_COLUMNS}
            """,
            (str(post_id), str(group_id)),
        )
        row = cursor.fetchone()

    return GroupPostInDB.model_validate(row) if row else None


def soft_delete_group_post_db(
    group_id: uuid.UUID, post_id: uuid.UUID
) -> Optional[GroupPostInDB]:
    with transaction() as cursor:
        cursor.execute(
            f"""
            UPDATE group_posts SET is_deleted = TRUE
            WHERE id = %s AND group_id = %s AND is_deleted = FALSE
            RETURNING {GROUP_POST_COLUMNS}
            """,
            (str(post_id), str(group_id)),
        )
        row = cursor.fetchone()
        if row is not None and row["status"] == "approved":
            cursor.execute(_POST_COUNT_SQL, (-1, str(group_id)))

    return GroupPostInDB.model_validate(row) if row else None
