"""Interfaces the engine depends on.

The engine never talks to the database directly; services provide these
implementations per execution (scoped to the executing user).
"""

from typing import Any, Protocol

from flowdash.models.connector import ConnectorConfig


class ConnectorNotFoundError(LookupError):
    """Connector does not exist or is not visible to the executing user."""

    def __init__(self, connector_id: str) -> None:
        self.connector_id = connector_id
        super().__init__(f"Connector not found: {connector_id}")


class TableStoreError(Exception):
    """Table storage rejected a read or write."""


class ConnectorResolver(Protocol):
    async def get_connector(self, connector_id: str) -> ConnectorConfig:
        """Load a decrypted connector.

        Raises:
            ConnectorNotFoundError: If the connector is unknown
        """
        ...

    async def save_connector(self, connector: ConnectorConfig) -> None:
        """Persist connector auth changes (refreshed tokens)."""
        ...


class TableStore(Protocol):
    async def read_rows(
        self,
        table_id: str,
        filter: dict[str, Any],
        limit: int,
    ) -> list[dict[str, Any]]:
        ...

    async def write_row(self, table_id: str, data: dict[str, Any]) -> dict[str, Any]:
        ...


class InMemoryConnectorResolver:
    """Dict-backed ConnectorResolver for ad-hoc connectors and tests."""

    def __init__(self, connectors: list[ConnectorConfig] | None = None) -> None:
        self.connectors: dict[str, ConnectorConfig] = {
            c.id: c for c in connectors or [] if c.id is not None
        }
        self.saved: list[ConnectorConfig] = []

    async def get_connector(self, connector_id: str) -> ConnectorConfig:
        try:
            return self.connectors[connector_id]
        except KeyError:
            raise ConnectorNotFoundError(connector_id) from None

    async def save_connector(self, connector: ConnectorConfig) -> None:
        if connector.id is not None:
            self.connectors[connector.id] = connector
        self.saved.append(connector)


class InMemoryTableStore:
    """Dict-backed TableStore; rows match a filter on key equality."""

    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {}

    async def read_rows(
        self,
        table_id: str,
        filter: dict[str, Any],
        limit: int,
    ) -> list[dict[str, Any]]:
        rows = [
            row
            for row in self.tables.get(table_id, [])
            if all(row.get(key) == value for key, value in filter.items())
        ]
        return rows[:limit]

    async def write_row(self, table_id: str, data: dict[str, Any]) -> dict[str, Any]:
        self.tables.setdefault(table_id, []).append(dict(data))
        return dict(data)
