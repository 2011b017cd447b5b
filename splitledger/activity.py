import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from .config import config
from .errors import StoreUnavailableError
from .models import ActivityEntry, ActivityType
from .storage import LedgerStore

logger = logging.getLogger(__name__)


class ActivityLog:
    """Append-only feed of ledger mutations.

    Appends are best effort: the ledger record they describe is already
    persisted, so a store outage is retried and then logged rather than
    raised. Reads degrade to an empty feed.
    """

    def __init__(self, storage: LedgerStore, retries: Optional[int] = None):
        self.storage = storage
        self.retries = config.ACTIVITY_APPEND_RETRIES if retries is None else retries

    def record(
        self,
        type: ActivityType,
        actor: str,
        description: str,
        target: Optional[str] = None,
        participants: Optional[list[str]] = None,
        group_id: Optional[UUID] = None,
        amount: Optional[Decimal] = None,
    ) -> Optional[ActivityEntry]:
        entry = ActivityEntry(
            id=uuid4(),
            type=type,
            actor=actor,
            target=target,
            participants=sorted(set(participants or [])),
            group_id=group_id,
            amount=amount,
            description=description,
            timestamp=datetime.now(timezone.utc),
        )

        for attempt in range(self.retries + 1):
            try:
                self.storage.append_activity(entry)
                return entry
            except StoreUnavailableError as e:
                logger.warning(
                    "Activity append failed (attempt %d/%d) for %s: %s",
                    attempt + 1, self.retries + 1, type.value, e,
                )
        logger.error("Dropping activity entry %s after %d attempts: %s", entry.id, self.retries + 1, description)
        return None

    def list_for(self, user: str, limit: Optional[int] = None) -> list[ActivityEntry]:
        try:
            entries = self.storage.list_activity_for(user)
        except StoreUnavailableError as e:
            logger.warning("Activity feed unavailable for %s: %s", user, e)
            return []
        return entries[:limit] if limit is not None else entries
