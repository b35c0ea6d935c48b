import re
from typing import Optional

from fastapi import Header
from loguru import logger
from starlette.concurrency import run_in_threadpool

from agrigrow.app.core.errors import not_found, unauthorized
from agrigrow.app.db import users as users_db
from agrigrow.app.db.schemas import UserInDB


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    digits = re.sub(r"\D", "", raw or "")
    return digits or None


async def get_optional_user(
    x_user_phone: Optional[str] = Header(None),
) -> Optional[UserInDB]:
    phone = normalize_phone(x_user_phone)
    if not phone:
        return None
    user = await run_in_threadpool(users_db.get_user_by_phone, phone)
    if not user:
        logger.debug(f"get_optional_user: no user for phone ending {phone[-4:]}")
    return user


async def get_current_user(
    x_user_phone: Optional[str] = Header(None),
) -> UserInDB:
    phone = normalize_phone(x_user_phone)
    if not phone:
        raise unauthorized("Authentication required")
    user = await run_in_threadpool(users_db.get_user_by_phone, phone)
    if not user:
        raise not_found("User not found")
    return user
