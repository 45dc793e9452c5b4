"""Resolution of the VRCX tables that should currently be watched"""

import re
from typing import Dict, List, Optional

from loguru import logger

from ..connectors.base import StoreReader
from .base import CDCError, Scope, StoreUnavailableError, WatchTarget


ACTIVE_ENTITY_KEY = "config:lastuserloggedin"

GAMELOG_TABLES: Dict[str, str] = {
    "location": "gamelog_location",
    "join_leave": "gamelog_join_leave",
    "video_play": "gamelog_video_play",
    "event": "gamelog_event",
}

FEED_TABLE_SUFFIXES: Dict[str, str] = {
    "gps": "feed_gps",
    "status": "feed_status",
    "bio": "feed_bio",
    "avatar": "feed_avatar",
    "online_offline": "feed_online_offline",
}

_SEPARATORS = re.compile(r"[_-]")
_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9]+$")


def sanitize(entity_id: Optional[str]) -> Optional[str]:
    """
    Turn an entity identifier into a token usable inside a table name

    VRCX names per-user tables after the user id with '_' and '-' removed,
    e.g. ``usr_1a2b-3c`` -> ``usr1a2b3c``. The result is only returned if it
    consists of ASCII letters and digits; anything else could end up in the
    table-name position of a statement.

    Args:
        entity_id: Raw identifier, possibly absent

    Returns:
        The token, or None if no safe token can be derived
    """
    if not entity_id or not isinstance(entity_id, str):
        return None
    token = _SEPARATORS.sub("", entity_id)
    if not _TOKEN_PATTERN.match(token):
        return None
    return token


def feed_targets(token: str) -> List[WatchTarget]:
    """Get the per-user feed tables for a sanitized token, unchecked"""
    return [
        WatchTarget(Scope.FEED, subtype, f"{token}_{suffix}")
        for subtype, suffix in FEED_TABLE_SUFFIXES.items()
    ]


def gamelog_targets() -> List[WatchTarget]:
    """Get the global game log tables, unchecked"""
    return [
        WatchTarget(Scope.GAMELOG, subtype, table_name)
        for subtype, table_name in GAMELOG_TABLES.items()
    ]


class TableResolver:
    """Computes the set of tables to watch from the store's catalog"""

    def __init__(self, active_entity_key: str = ACTIVE_ENTITY_KEY):
        self.active_entity_key = active_entity_key

    def resolve_active_entity(self, reader: StoreReader) -> Optional[str]:
        """
        Read the most recently written active-user record

        Args:
            reader: Open store reader

        Returns:
            The raw entity id, or None if there is none or it cannot be read

        Raises:
            StoreUnavailableError: If the store handle itself failed
        """
        try:
            if not reader.table_exists("configs"):
                return None
            value = reader.get_config_value(self.active_entity_key)
        except StoreUnavailableError:
            raise
        except CDCError as e:
            logger.warning(f"Failed to read active user from configs table: {e}")
            return None
        return str(value) if value else None

    def resolve_watch_targets(self, reader: StoreReader, entity_id: Optional[str]) -> List[WatchTarget]:
        """
        Get every table that should be watched right now

        Global tables are always candidates; per-user tables only when a safe
        token can be derived from ``entity_id``. Candidates missing from the
        catalog, or whose lookup fails, are left out without affecting the rest.

        Args:
            reader: Open store reader
            entity_id: Active entity id, possibly absent

        Returns:
            Existing tables with their scope and subtype

        Raises:
            StoreUnavailableError: If the store handle itself failed
        """
        candidates = gamelog_targets()

        token = sanitize(entity_id)
        if token:
            candidates.extend(feed_targets(token))
        elif entity_id:
            logger.warning(f"Ignoring active user id that is not a safe table token: {entity_id!r}")

        return [target for target in candidates if self._exists(reader, target.table_name)]

    def _exists(self, reader: StoreReader, table_name: str) -> bool:
        try:
            return reader.table_exists(table_name)
        except StoreUnavailableError:
            raise
        except CDCError as e:
            logger.warning(f"Failed to check table existence: {table_name}: {e}")
            return False
