import asyncio
import os
import sys
from pathlib import Path

# Ensure backend path is in sys.path when run from the repository root
if os.path.exists("backend"):
    sys.path.append(os.path.join(os.getcwd(), "backend"))

from studio_community.infra.postgres import close_pool, get_pool

SCHEMA_PATH = Path(__file__).resolve().parent.parent / "studio_community" / "infra" / "schema.sql"


async def apply_schema() -> None:
    sql = SCHEMA_PATH.read_text(encoding="utf-8")
    print(f"Applying schema: {SCHEMA_PATH.name}")
    pool = await get_pool()
    try:
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(sql)
    finally:
        await close_pool()
    print("Schema applied successfully.")


if __name__ == "__main__":
    if sys.platform == 'win32':
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
    asyncio.run(apply_schema())
