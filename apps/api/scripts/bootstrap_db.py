"""Create the relay's database schema (messages and usage counters)."""
from __future__ import annotations

import asyncio

from relay.db.session import engine
from relay.models import Base


async def create_schema() -> None:
	"""Create the database schema if it does not already exist."""

	async with engine.begin() as conn:
		await conn.run_sync(Base.metadata.create_all)


async def main() -> None:
	await create_schema()
	await engine.dispose()
	print("Database schema ensured.")


if __name__ == "__main__":
	asyncio.run(main())
