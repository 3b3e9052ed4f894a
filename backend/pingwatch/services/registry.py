"""Monitor registry - read monitor definitions and write health fields."""
import logging
from datetime import datetime
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import async_session
from ..models import Monitor
from ..schemas.monitor import CheckStatus, MonitorHealth, MonitorSpec
from ..utils.db_utils import session_scope

logger = logging.getLogger(__name__)


class MonitorRegistry:
    """Durable store of monitor definitions, as seen by the check engine."""

    def __init__(self, session_factory=async_session):
        self.session_factory = session_factory

    @staticmethod
    def to_spec(monitor: Monitor) -> Optional[MonitorSpec]:
        """Convert a row to a MonitorSpec, or None if the row is malformed."""
        try:
            return MonitorSpec.model_validate(monitor)
        except ValidationError as e:
            logger.warning(f"Skipping monitor {monitor.id} with invalid configuration: {e.error_count()} error(s)")
            return None

    async def list_active_monitors(self) -> List[MonitorSpec]:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(Monitor).where(Monitor.active.is_(True)).order_by(Monitor.id)
            )
            specs = [self.to_spec(monitor) for monitor in result.scalars().all()]

        return [spec for spec in specs if spec is not None]

    async def get(self, monitor_id: int) -> Optional[MonitorSpec]:
        async with session_scope(self.session_factory) as session:
            monitor = await session.get(Monitor, monitor_id)
            return self.to_spec(monitor) if monitor else None

    async def get_health(self, monitor_id: int) -> Optional[MonitorHealth]:
        async with session_scope(self.session_factory) as session:
            monitor = await session.get(Monitor, monitor_id)
            if monitor is None:
                return None
            return MonitorHealth(
                monitor_id=monitor.id,
                last_status=monitor.last_status,
                last_checked_at=monitor.last_checked_at,
                uptime_percent=monitor.uptime_percent,
            )

    async def load_for_update(self, session: AsyncSession, monitor_id: int) -> Optional[Monitor]:
        """Fetch a monitor row, locking it for the rest of the transaction where supported."""
        result = await session.execute(
            select(Monitor).where(Monitor.id == monitor_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def update_health(
        self,
        monitor_id: int,
        status: CheckStatus,
        checked_at: datetime,
        uptime_percent: float,
        session: Optional[AsyncSession] = None,
    ) -> bool:
        """Write health fields. Returns False if the monitor no longer exists."""
        async with session_scope(self.session_factory, session) as session:
            result = await session.execute(
                update(Monitor)
                .where(Monitor.id == monitor_id)
                .values(
                    last_status=CheckStatus(status).value,
                    last_checked_at=checked_at,
                    uptime_percent=uptime_percent,
                )
                .execution_options(synchronize_session=False)
            )
        return result.rowcount > 0
