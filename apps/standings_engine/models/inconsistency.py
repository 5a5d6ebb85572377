"""
Inconsistency: one validation finding, consumed by reports, repairs and migration gating.
"""

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple


class Severity(str, enum.Enum):
    ERROR = "error"
    WARNING = "warning"


class RepairKind(str, enum.Enum):
    """The single repair applied to a fixable inconsistency type."""

    CLAMP_NEGATIVE = "clamp_negative"
    RECOMPUTE_DERIVED = "recompute_derived"
    DELETE_DUPLICATES = "delete_duplicates"
    DELETE_ORPHANS = "delete_orphans"
    DELETE_STRAY = "delete_stray"
    CANCEL_SELF_PLAY = "cancel_self_play"
    RESET_INVALID_SCORE = "reset_invalid_score"
    RECALCULATE = "recalculate"


# Repairs that delete rows and therefore need force=True
DESTRUCTIVE_REPAIRS = frozenset(
    {RepairKind.DELETE_DUPLICATES, RepairKind.DELETE_ORPHANS, RepairKind.DELETE_STRAY}
)


@dataclass
class Inconsistency:
    type: str
    severity: Severity
    entity: str
    description: str
    affected_count: int
    fixable: bool
    category: str = "IntegrityError"
    repair: Optional[RepairKind] = None
    record_ids: Tuple[int, ...] = ()
    league_id: Optional[int] = None
    season_id: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR

    def signatures(self) -> set:
        """(type, record id) pairs used to tell new findings from old ones."""
        if self.record_ids:
            return {(self.type, self.entity, record_id) for record_id in self.record_ids}
        return {(self.type, self.entity, self.description)}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "severity": self.severity.value,
            "entity": self.entity,
            "description": self.description,
            "affected_count": self.affected_count,
            "fixable": self.fixable,
            "category": self.category,
            "repair": self.repair.value if self.repair else None,
            "record_ids": list(self.record_ids),
            "league_id": self.league_id,
            "season_id": self.season_id,
            "details": self.details,
        }
