import uuid
from typing import List, Optional, Sequence

from .connection import fetch_one, fetch_all
from .schemas import GroupInDB

GROUP_COLUMNS = """
    id, name, slug, description, crops, region, privacy, require_post_approval,
    member_count, post_count, is_active, created_at
"""


def get_group_by_id_db(group_id: uuid.UUID) -> Optional[GroupInDB]:
    query = f"SELECT {GROUP_COLUMNS} FROM groups WHERE id = %s AND is_active = TRUE"
    data = fetch_one(query, (str(group_id),))
    return GroupInDB.model_validate(data) if data else None


def get_member_role_db(group_id: uuid.UUID, user_id: uuid.UUID) -> Optional[str]:
    query = "SELECT role FROM group_members WHERE group_id = %s AND user_id = %s"
    data = fetch_one(query, (str(group_id), str(user_id)))
    return data["role"] if data else None


def get_joined_group_ids_db(user_id: uuid.UUID) -> List[str]:
    query = "SELECT group_id FROM group_members WHERE user_id = %s"
    return [str(row["group_id"]) for row in fetch_all(query, (str(user_id),))]


def get_discoverable_groups_db(
    exclude_group_ids: Sequence[str] = (), limit: int = 200
) -> List[GroupInDB]:
    """Active groups a viewer could join. Invite-only groups never surface."""
    clauses = ["is_active = TRUE", "privacy <> 'invite-only'"]
    params: List = []
    if exclude_group_ids:
        clauses.append("NOT (id = ANY(%s::uuid[]))")
        params.append(list(exclude_group_ids))

    query = (
        f"SELECT {GROUP_COLUMNS} FROM groups WHERE "
        + " AND ".join(clauses)
        + " ORDER BY member_count DESC, created_at DESC LIMIT %s"
    )
    params.append(limit)
    return [GroupInDB.model_validate(row) for row in fetch_all(query, tuple(params))]

