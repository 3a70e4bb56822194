"""Repository for portal operator accounts."""

from dataclasses import dataclass, field
from typing import Optional

from extracts.core.resilience import with_db_retry
from extracts.services.portal.base import OperatorCredentials


@dataclass
class Operator:
    id: int
    username: str
    portal_login: str
    password: str = field(repr=False)

    @property
    def credentials(self) -> OperatorCredentials:
        return OperatorCredentials(
            username=self.username, portal_login=self.portal_login, password=self.password
        )


class OperatorRepository:
    """Read-only lookup of operator accounts."""

    def __init__(self, pool):
        self._pool = pool

    async def get_by_username(self, username: str) -> Optional[Operator]:
        query = """
            SELECT id, username, portal_login, password
            FROM operators
            WHERE username = $1
        """
        row = await with_db_retry(self._pool, lambda conn: conn.fetchrow(query, username))
        if not row:
            return None
        return Operator(
            id=row["id"],
            username=row["username"],
            portal_login=row["portal_login"],
            password=row["password"],
        )
