# Sync/conflict.py
# Description: Tracks field-level conflicts between local and server values and records how each was resolved.
#
# Imports
from dataclasses import replace
from typing import Any, Callable, List, Optional, Tuple
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
from .models import Conflict, ConflictResolution, utcnow
#
#######################################################################################################################
#
# Classes:


class ConflictManager:
    """
    Tracks field-level disagreements between local and server values.

    Resolution is two-phase: ``resolve_conflict`` records the decision only.
    Writing the chosen value back into the cache is left to the caller
    (see ``resolved_value``).
    """

    def __init__(self, clock: Callable = utcnow):
        self._conflicts: Tuple[Conflict, ...] = ()
        self._clock = clock

    @property
    def conflicts(self) -> Tuple[Conflict, ...]:
        return self._conflicts

    @property
    def unresolved_conflicts(self) -> List[Conflict]:
        return [c for c in self._conflicts if not c.resolved]

    @property
    def has_unresolved_conflicts(self) -> bool:
        return any(not c.resolved for c in self._conflicts)

    def get_conflict(self, record_id: str, field: str) -> Optional[Conflict]:
        for conflict in self._conflicts:
            if conflict.identity == (record_id, field):
                return conflict
        return None

    def add_conflict(self, record_id: str, field: str, server_value: Any, client_value: Any) -> Conflict:
        """Insert a conflict, replacing any existing entry with the same (record_id, field)."""
        entry = Conflict(
            record_id=record_id,
            field=field,
            server_value=server_value,
            client_value=client_value,
            timestamp=self._clock(),
            resolved=False,
        )
        self._conflicts = tuple(c for c in self._conflicts if c.identity != entry.identity) + (entry,)
        logger.debug(f"Conflict recorded for {record_id}.{field}: server={server_value!r} client={client_value!r}")
        return entry

    def resolve_conflict(
        self,
        record_id: str,
        field: str,
        resolution: ConflictResolution,
        merged_value: Any = None,
    ) -> Optional[Conflict]:
        """Marks the matching conflict resolved. Returns the updated entry, or None if no entry matched."""
        resolution = ConflictResolution(resolution)
        if resolution == ConflictResolution.MERGE and merged_value is None:
            logger.warning(f"Merge resolution for {record_id}.{field} recorded without a merged value")

        updated: Optional[Conflict] = None
        new_conflicts = []
        for conflict in self._conflicts:
            if conflict.identity == (record_id, field):
                conflict = replace(conflict, resolved=True, resolution=resolution, merged_value=merged_value)
                updated = conflict
            new_conflicts.append(conflict)
        if updated is None:
            logger.warning(f"No conflict found for {record_id}.{field}; nothing to resolve")
            return None
        self._conflicts = tuple(new_conflicts)
        logger.info(f"Conflict {record_id}.{field} resolved with '{resolution.value}'")
        return updated

    def clear_resolved_conflicts(self) -> int:
        before = len(self._conflicts)
        self._conflicts = tuple(c for c in self._conflicts if not c.resolved)
        return before - len(self._conflicts)

    def clear_all_conflicts(self) -> None:
        self._conflicts = ()


def resolved_value(conflict: Conflict) -> Any:
    """The value a caller should apply for a resolved conflict."""
    if not conflict.resolved:
        raise ValueError(f"Conflict {conflict.record_id}.{conflict.field} is not resolved")
    if conflict.resolution == ConflictResolution.CLIENT:
        return conflict.client_value
    if conflict.resolution == ConflictResolution.MERGE:
        return conflict.merged_value
    return conflict.server_value

#
# End of conflict.py
#######################################################################################################################
