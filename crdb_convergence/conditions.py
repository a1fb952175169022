from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union


class ConditionType(str, Enum):
    INITIALIZED = "Initialized"
    DECOMMISSION = "Decommission"
    CRDB_VERSION_CHECKED = "CrdbVersionChecked"
    CERTIFICATE_GENERATED = "CertificateGenerated"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class ConditionRecord:
    # Kinds the operator adds later stay plain strings so they compare unequal
    kind: Union[ConditionType, str]
    status: Union[ConditionStatus, str]
    last_transition_time: Optional[str] = None

    def without_timestamp(self) -> "ConditionRecord":
        return replace(self, last_transition_time=None)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ConditionRecord":
        return cls(
            kind=_coerce(ConditionType, raw.get("type", "")),
            status=_coerce(ConditionStatus, raw.get("status", "")),
            last_transition_time=raw.get("lastTransitionTime"),
        )


def _coerce(enum_cls, value):
    try:
        return enum_cls(value)
    except ValueError:
        return value


def strip_timestamps(conditions: Sequence[ConditionRecord]) -> List[ConditionRecord]:
    """Transition times are not deterministic, so comparisons ignore them"""
    return [condition.without_timestamp() for condition in conditions]
