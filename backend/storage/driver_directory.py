"""Driver id lookup by short prefix (used when only the external reference survives)."""

from typing import Iterable, List, Optional

import structlog

from storage.realtime_db import RealtimeDatabase

logger = structlog.get_logger().bind(component="driver_directory")


def match_prefix(keys: Iterable[str], prefix: str) -> List[str]:
    return sorted(k for k in keys if k.startswith(prefix))


class DriverDirectory:
    PRIMARY = "drivers"
    SECONDARY = "driver_commissions"

    def __init__(self, db: RealtimeDatabase):
        self.db = db

    async def _keys(self, root: str) -> List[str]:
        result = await self.db.get(root, shallow=True)
        if not result.ok or not isinstance(result.data, dict):
            if not result.ok:
                logger.warning("directory_unavailable", root=root,
                               store_status=result.status.value)
            return []
        return list(result.data.keys())

    async def resolve_prefix(self, prefix: str) -> Optional[str]:
        """
        Full driver id for an id prefix: drivers first, then driver_commissions.
        Several matches resolve to the lexicographically smallest id.
        """
        if not prefix:
            return None

        for root in (self.PRIMARY, self.SECONDARY):
            matches = match_prefix(await self._keys(root), prefix)
            if matches:
                if len(matches) > 1:
                    logger.warning("driver_prefix_ambiguous", prefix=prefix,
                                   root=root, candidates=matches[:5], chosen=matches[0])
                logger.info("driver_prefix_resolved", prefix=prefix,
                            root=root, driver_id=matches[0])
                return matches[0]
            logger.warning("driver_prefix_not_found", prefix=prefix, root=root)
        return None
