from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

# A fixed key for the scheduler leader lock.
# Postgres advisory locks take a 64-bit key; any constant shared by all instances works.
LEADER_LOCK_KEY = 84728473

async def try_advisory_lock(session: AsyncSession, key: int = LEADER_LOCK_KEY) -> bool:
    """
    Attempts to acquire a Postgres session-level advisory lock.
    Returns True if acquired, False otherwise.

    Note: Session-level locks are released automatically when the session ends.
    Other backends (sqlite in development) run a single process, which always leads.
    """
    if session.get_bind().dialect.name != "postgresql":
        return True

    # pg_try_advisory_lock is session-scoped.
    result = await session.execute(
        text("SELECT pg_try_advisory_lock(:key)"),
        {"key": key}
    )
    return result.scalar() is True
