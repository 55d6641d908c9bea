"""
Mailbox -> tenant resolution.

The sync engine does not own mailboxes; it looks them up in the host
application's table (settings.MAILBOX_TABLE, expected columns id and
tenant_id).
"""

from psycopg import sql

from mailsync.config import settings
from mailsync.db.helpers import fetch_one, with_db_retry


class SqlMailboxDirectory:
    def __init__(self, table_name: str | None = None):
        self.table_name = table_name or settings.MAILBOX_TABLE

    @with_db_retry()
    async def resolve_tenant(self, mailbox_id: str) -> str | None:
        """Return the owning tenant id, or None if the mailbox is unknown."""
        query = sql.SQL("SELECT tenant_id FROM {} WHERE id = %s").format(sql.Identifier(self.table_name))
        row = await fetch_one(query, (mailbox_id,))
        if not row or not row.get("tenant_id"):
            return None
        return str(row["tenant_id"])


mailbox_directory = SqlMailboxDirectory()
