import uuid
from typing import Any, Dict, Optional

from psycopg2.extras import Json

from .connection import execute_and_fetch_one
from .schemas import NotificationInDB


def create_notification_db(
    user_id: uuid.UUID,
    notification_type: str,
    title: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
) -> NotificationInDB:
    query = """
    INSERT INTO notifications (user_id, type, title, message, data)
    VALUES (%s, %s, %s, %s, %s)
    RETURNING id, user_id, type, title, message, data, is_read, created_at;
    """
    row = execute_and_fetch_one(
        query, (str(user_id), notification_type, title, message, Json(data or {}))
    )
    return NotificationInDB.model_validate(row)
