"""SQL-backed table storage for the table_read / table_write nodes."""

import json
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from flowdash.core.ports import TableStoreError
from flowdash.models.table import TableRow

logger = structlog.get_logger()


class SqlTableStore:
    """TableStore over the table_row table, scoped to one user.

    Filters match on top-level column equality and are applied after
    loading, in insertion order.
    """

    def __init__(self, session: AsyncSession, user_id: str) -> None:
        self._session = session
        self._user_id = user_id

    async def read_rows(
        self,
        table_id: str,
        filter: dict[str, Any],
        limit: int,
    ) -> list[dict[str, Any]]:
        query = (
            select(TableRow)
            .where(TableRow.table_id == table_id, TableRow.user_id == self._user_id)
            .order_by(TableRow.created_at)
        )
        try:
            result = await self._session.execute(query)
        except SQLAlchemyError as e:
            raise TableStoreError(f"Failed to read table '{table_id}'") from e

        rows: list[dict[str, Any]] = []
        for row in result.scalars().all():
            data = row.get_data()
            if all(data.get(key) == value for key, value in filter.items()):
                rows.append({"id": row.id, **data})
                if len(rows) >= limit:
                    break
        return rows

    async def write_row(self, table_id: str, data: dict[str, Any]) -> dict[str, Any]:
        try:
            payload = json.dumps(data)
        except (TypeError, ValueError) as e:
            raise TableStoreError("Row data is not JSON serializable") from e

        row = TableRow(table_id=table_id, user_id=self._user_id, data=payload)
        self._session.add(row)
        try:
            await self._session.commit()
        except SQLAlchemyError as e:
            await self._session.rollback()
            raise TableStoreError(f"Failed to write to table '{table_id}'") from e

        logger.debug("table_row_written", table_id=table_id, row_id=row.id)
        return {"id": row.id, **data}
