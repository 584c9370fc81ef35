"""Create the billing tables in the configured database.

Usage:
    python -m scripts.create_tables
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()

from paysub.core.config import settings
from paysub.core.database import create_session_factory, init_models


async def main():
    print("=" * 50)
    print("Creating billing tables")
    print("=" * 50)
    print(f"  Database: {settings.DATABASE_URL.rsplit('@', 1)[-1]}")

    engine, _ = create_session_factory(settings.DATABASE_URL)
    try:
        await init_models(engine)
    finally:
        await engine.dispose()
    print("Done.")


if __name__ == "__main__":
    asyncio.run(main())
