"""Archive store for events aged out of the live table."""
import logging
from datetime import datetime
from typing import Callable, Optional

from heroes_analytics.shared.database import ConnectionManager
from heroes_analytics.services.ingestion_service import DurableEventRepository

logger = logging.getLogger(__name__)


class ArchiveRepository(DurableEventRepository):
    """``interaction_events_archive``: same columns as the live table with
    ``archived_at`` in place of ``ingested_at``.

    Archived rows are immutable copies keyed by ``event_id``, so copying the
    same event twice leaves exactly one row.
    """

    stamp_column = "archived_at"

    def __init__(
        self,
        connection_manager: Optional[ConnectionManager] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        super().__init__(connection_manager, "interaction_events_archive", clock=clock)
