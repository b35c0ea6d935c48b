import uuid
from typing import List, Optional, Sequence

from .connection import fetch_one, fetch_all
from .schemas import UserInDB, UserContext

USER_COLUMNS = """
    id, phone, name, role, crops, location_state, location_district,
    experience_level, is_verified, badges, created_at
"""


def get_user_by_phone(phone: str) -> Optional[UserInDB]:
    query = f"SELECT {USER_COLUMNS} FROM users WHERE phone = %s"
    user_data = fetch_one(query, (phone,))

    return UserInDB.model_validate(user_data) if user_data else None


def get_user_by_id(user_id: uuid.UUID) -> Optional[UserInDB]:
    query = f"SELECT {USER_COLUMNS} FROM users WHERE id = %s"
    user_data = fetch_one(query, (str(user_id),))

    return UserInDB.model_validate(user_data) if user_data else None


def get_user_context_by_phone(phone: str) -> Optional[UserContext]:
    user = get_user_by_phone(phone)
    if not user:
        return None
    return UserContext(
        name=user.name,
        role=user.role,
        crops=user.crops,
        state=user.location_state,
        district=user.location_district,
        experience_level=user.experience_level,
    )


def get_users_by_ids_db(user_ids: Sequence[str]) -> List[UserInDB]:
    if not user_ids:
        return []
    query = f"SELECT {USER_COLUMNS} FROM users WHERE id = ANY(%s::uuid[])"
    return [UserInDB.model_validate(row) for row in fetch_all(query, (list(user_ids),))]
