from __future__ import annotations

import argparse
import asyncio
import json

from sqlalchemy import select

from codeassess.db import AsyncSessionLocal, create_all_tables, engine
from codeassess.models import User, UserRole
from codeassess.security import hash_password

DEFAULT_ACCOUNTS = (
    ("Admin", "admin@example.com", "admin123", UserRole.ADMIN),
    ("Recruiter", "recruiter@example.com", "recruiter123", UserRole.RECRUITER),
    ("Candidate", "candidate@example.com", "candidate123", UserRole.CANDIDATE),
)


async def seed(create_tables: bool = False) -> dict[str, str]:
    if create_tables:
        await create_all_tables()

    outcome: dict[str, str] = {}
    async with AsyncSessionLocal() as session:
        for name, email, password, role in DEFAULT_ACCOUNTS:
            existing = await session.scalar(select(User).where(User.email == email))
            if existing is not None:
                outcome[email] = "exists"
                continue
            session.add(User(name=name, email=email, password_hash=hash_password(password), role=role.value))
            outcome[email] = "created"
        await session.commit()
    await engine.dispose()
    return outcome


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed the default admin, recruiter and candidate accounts.")
    parser.add_argument("--create-tables", action="store_true", help="create missing tables before seeding")
    args = parser.parse_args()
    print(json.dumps(asyncio.run(seed(create_tables=args.create_tables)), ensure_ascii=True))


if __name__ == "__main__":
    main()
