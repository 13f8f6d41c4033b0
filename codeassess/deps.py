from __future__ import annotations

from typing import Annotated, Awaitable, Callable

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from codeassess.db import get_async_session
from codeassess.errors import AuthError, ForbiddenError
from codeassess.execution import ExecutionClient, default_execution_client
from codeassess.generator import TestcaseGenerator, default_generator
from codeassess.models import User, UserRole
from codeassess.security import decode_access_token

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> User:
    if credentials is None:
        raise AuthError("Missing token")

    try:
        payload = decode_access_token(credentials.credentials)
    except ValueError as exc:
        raise AuthError("Invalid token") from exc

    subject = payload.get("sub")
    if not subject:
        raise AuthError("Invalid token payload")

    user = await session.scalar(select(User).where(User.email == subject))
    if user is None:
        raise AuthError("User not found")
    return user


def require_roles(*roles: UserRole) -> Callable[[User], Awaitable[User]]:
    allowed = {role.value for role in roles}

    async def _dependency(user: Annotated[User, Depends(get_current_user)]) -> User:
        if user.role not in allowed:
            raise ForbiddenError("Forbidden")
        return user

    return _dependency


require_manager = require_roles(UserRole.ADMIN, UserRole.RECRUITER)
require_candidate = require_roles(UserRole.CANDIDATE)


def get_execution_client() -> ExecutionClient:
    return default_execution_client


def get_testcase_generator() -> TestcaseGenerator:
    return default_generator
