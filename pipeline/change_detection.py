from typing import Any, Dict, List, Optional

from loguru import logger

from tools.redis_store import RedisStore

LAST_SEEN_KEY = "last_seen"


class ChangeDetector:
    """Remembers the last seen ``updated_at`` per lead.

    A lead counts as changed iff its ``updated_at`` is strictly greater than
    the stored value (0 when never seen). Only changed leads advance the
    stored value. Without a store the map lives in process memory.
    """

    def __init__(self, store: Optional[RedisStore] = None):
        self.store = store
        self._last_seen: Dict[int, int] = {}

    async def last_seen(self, lead_id: int) -> int:
        if self.store is not None:
            return await self.store.get_int(LAST_SEEN_KEY, str(lead_id))
        return self._last_seen.get(lead_id, 0)

    async def _remember(self, lead_id: int, updated_at: int) -> None:
        if self.store is not None:
            await self.store.set_int(LAST_SEEN_KEY, str(lead_id), updated_at)
        else:
            self._last_seen[lead_id] = updated_at

    async def filter_changed(self, leads: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        changed = []
        for lead in leads:
            updated_at = lead.get("updated_at") or 0
            if updated_at > await self.last_seen(lead["id"]):
                await self._remember(lead["id"], updated_at)
                changed.append(lead)
        logger.info(f"{len(changed)} of {len(leads)} leads changed since last check")
        return changed
