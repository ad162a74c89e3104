"""Background OAuth2 token refresh.

Periodically walks the stored OAuth2 connectors and refreshes tokens that
are missing or about to expire, so flows started later find a valid token.
Connectors whose refresh fails with the authorization code grant are
flagged `needs_reauth` and skipped until the user authorizes them again.
"""

import asyncio

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from flowdash.config import settings
from flowdash.core.connector_auth import ConnectorAuthResolver
from flowdash.core.errors import AuthError
from flowdash.services.connector_service import (
    ConnectorService,
    ConnectorServiceError,
    get_auth_resolver,
)

logger = structlog.get_logger()


class TokenRefreshService:
    """Keeps stored OAuth2 tokens fresh in the background.

    Example usage:
        refresher = TokenRefreshService(session_maker)
        await refresher.start()
        ...
        await refresher.stop()
    """

    def __init__(
        self,
        session_maker: sessionmaker,
        resolver: ConnectorAuthResolver | None = None,
        interval: float | None = None,
    ) -> None:
        self._session_maker = session_maker
        self._resolver = resolver or get_auth_resolver()
        self.interval = interval or settings.token_refresh_interval
        self._task: asyncio.Task | None = None
        self._shutdown = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> dict[str, int]:
        """Refresh every stored token that needs it.

        Returns:
            Counts of connectors checked, refreshed and failed
        """
        stats = {"checked": 0, "refreshed": 0, "failed": 0}
        async with self._session_maker() as session:
            service = ConnectorService(session, auth_resolver=self._resolver)
            for user_id, config in await service.list_oauth_configs():
                if config.auth.needs_reauth:
                    continue
                stats["checked"] += 1
                try:
                    refreshed, changed = await self._resolver.maybe_refresh(config)
                except AuthError as e:
                    stats["failed"] += 1
                    if e.connector is not None:
                        await service.save_config(e.connector, user_id)
                    logger.warning(
                        "background_token_refresh_failed",
                        connector_id=config.id,
                        user_id=user_id,
                        error=e.message,
                        needs_reauth=e.connector is not None,
                    )
                    continue
                if changed:
                    await service.save_config(refreshed, user_id)
                    stats["refreshed"] += 1

        if stats["refreshed"] or stats["failed"]:
            logger.info("background_token_refresh_completed", **stats)
        return stats

    async def start(self) -> None:
        """Start the refresh loop as a background task."""
        if self.running:
            logger.warning("token_refresh_already_running")
            return
        self._shutdown.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info("token_refresh_started", interval=self.interval)

    async def stop(self) -> None:
        """Stop the refresh loop and wait for it to exit."""
        self._shutdown.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("token_refresh_stopped")

    async def _loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                await self.run_once()
            except (SQLAlchemyError, ConnectorServiceError) as e:
                logger.error("token_refresh_pass_failed", error_type=type(e).__name__, error=str(e))
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue
