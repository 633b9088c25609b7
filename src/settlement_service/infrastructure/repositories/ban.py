from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


@dataclass(frozen=True)
class BanStatus:
    is_banned: bool
    reason: str | None = None


class BanRepository:
    """Reads ban state through the datastore's ``check_user_ban_status`` function."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_status(self, user_id: str) -> BanStatus:
        result = await self._session.execute(
            text("""
                SELECT is_banned, reason
                FROM check_user_ban_status(:user_id)
            """),
            {"user_id": user_id},
        )
        row = result.fetchone()
        if not row:
            return BanStatus(is_banned=False)
        return BanStatus(is_banned=bool(row.is_banned), reason=row.reason)
