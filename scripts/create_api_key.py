"""Script to create an API key for a user."""

import asyncio
import sys

sys.path.insert(0, ".")

from studygen.auth.security import create_api_key
from studygen.db.models import Plan
from studygen.db.session import async_session_maker, init_db


async def main(user_id: str, plan: Plan):
    """Create an API key bound to ``user_id``."""
    print("Initializing database...")
    await init_db()

    print(f"Creating API key for {user_id} ({plan.value})...")
    async with async_session_maker() as db:
        api_key, full_key = await create_api_key(
            db,
            name=f"{user_id} key",
            user_id=user_id,
            plan=plan,
            rate_limit_per_minute=1000,
            rate_limit_per_hour=10000,
            expires_in_days=None,  # Never expires
        )
        await db.commit()

        print("\n" + "=" * 60)
        print("API KEY CREATED SUCCESSFULLY")
        print("=" * 60)
        print(f"\nAPI Key: {full_key}")
        print(f"Key ID:  {api_key.id}")
        print(f"Prefix:  {api_key.key_prefix}")
        print(f"Plan:    {api_key.plan.value}")
        print("\n⚠️  SAVE THIS KEY NOW - IT WILL NOT BE SHOWN AGAIN!")
        print("=" * 60)


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python scripts/create_api_key.py <user_id> [free|standard|plus|premium]")
        sys.exit(1)

    asyncio.run(main(sys.argv[1], Plan(sys.argv[2]) if len(sys.argv) > 2 else Plan.PREMIUM))
