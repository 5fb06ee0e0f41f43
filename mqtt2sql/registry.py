"""
Topic registry: which topics are ingested, how their payloads are read and
under which key their values are stored.

Rules come from ``[sensor:<label>]`` sections of the INI file and from the
``<prefix>_config`` catalog table. A rule without a sensor identity gets one
the first time it is seen: the catalog assigns it on insert, or, with the
catalog disabled, the registry hands out the next free number.
"""

import logging
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Tuple, Union

from .errors import ConfigError
from .extractor import compile_path
from .values import ValueType

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Partition keys
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SensorKey:
    sensor_id: int

    columns = ("sensorid",)

    def values(self) -> Tuple[Any, ...]:
        return (self.sensor_id,)

    def __str__(self) -> str:
        return f"sensor#{self.sensor_id}"


@dataclass(frozen=True)
class GroupNameKey:
    group: str
    name: str

    columns = ("group", "name")

    def values(self) -> Tuple[Any, ...]:
        return (self.group, self.name)

    def __str__(self) -> str:
        return f"{self.group}/{self.name}"


PartitionKey = Union[SensorKey, GroupNameKey]


class Addressing(Enum):
    SENSOR_ID = "sensorid"
    GROUP_NAME = "groupname"

    @classmethod
    def parse(cls, name: str) -> "Addressing":
        try:
            return cls((name or "").strip().lower())
        except ValueError:
            raise ConfigError(
                f"Invalid addressing {name!r}; expected 'sensorid' or 'groupname'"
            ) from None


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def normalize_scale(raw: Any) -> float | None:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None
    try:
        scale = float(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid scaling factor: {raw!r}") from None
    if math.isnan(scale):
        return None
    return scale


@dataclass(frozen=True)
class TopicRule:
    pattern: str
    value_type: ValueType = ValueType.TEXT
    jsonpath: str = ""
    scale: float | None = None
    group: str = ""
    name: str = ""
    unit: str = ""
    sensor_id: int | None = None

    @property
    def has_wildcard(self) -> bool:
        return "+" in self.pattern or "#" in self.pattern

    def with_identity(self, sensor_id: int) -> "TopicRule":
        if self.sensor_id is not None and self.sensor_id != sensor_id:
            raise ConfigError(
                f"Rule for {self.pattern} already has sensor id {self.sensor_id}"
            )
        return replace(self, sensor_id=int(sensor_id))

    def label(self) -> str:
        suffix = f" [{self.jsonpath}]" if self.jsonpath else ""
        return f"{self.pattern}{suffix}"


def rule_from_catalog_row(row: Mapping[str, Any]) -> TopicRule:
    return TopicRule(
        pattern=str(row["topic"] or "").strip(),
        value_type=ValueType.parse(row["datatype"]),
        jsonpath=(row["jsonpath"] or "").strip(),
        scale=normalize_scale(row["scaling"]),
        group=row["groupname"] or "",
        name=row["sensor"] or "",
        unit=row["unit"] or "",
        sensor_id=int(row["sensorid"]),
    )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TopicRegistry:
    def __init__(
        self,
        rules: Iterable[TopicRule],
        addressing: Addressing = Addressing.SENSOR_ID,
    ):
        self.addressing = addressing
        self.rules: List[TopicRule] = list(rules)
        self._validate()

    def __len__(self) -> int:
        return len(self.rules)

    def _validate(self) -> None:
        seen_ids: Dict[int, TopicRule] = {}
        seen_keys: Dict[Tuple[Any, ...], TopicRule] = {}
        for rule in self.rules:
            if not rule.pattern:
                raise ConfigError("Topic rule without topic")
            if rule.sensor_id is None:
                raise ConfigError(f"Rule {rule.label()} has no sensor id")
            other = seen_ids.get(rule.sensor_id)
            if other is not None:
                raise ConfigError(
                    f"Sensor id {rule.sensor_id} used by both "
                    f"{other.label()} and {rule.label()}"
                )
            seen_ids[rule.sensor_id] = rule

            if self.addressing is Addressing.GROUP_NAME:
                if not rule.group or not rule.name:
                    raise ConfigError(
                        f"Rule {rule.label()} needs group and name for groupname addressing"
                    )
                gk = (rule.group, rule.name)
                if gk in seen_keys:
                    raise ConfigError(
                        f"Group/name {rule.group}/{rule.name} used by more than one rule"
                    )
                seen_keys[gk] = rule

            if rule.jsonpath:
                compile_path(rule.jsonpath)

            if rule.scale is not None and rule.value_type is not ValueType.DOUBLE:
                logger.warning(
                    "Rule %s: scaling %s ignored for %s values",
                    rule.label(),
                    rule.scale,
                    rule.value_type.name.lower(),
                )
            if rule.has_wildcard:
                logger.warning(
                    "Rule topic contains wildcard: %s. Every matching topic "
                    "writes into the same series (%s).",
                    rule.pattern,
                    self.key_for(rule),
                )

    def key_for(self, rule: TopicRule) -> PartitionKey:
        if self.addressing is Addressing.GROUP_NAME:
            return GroupNameKey(rule.group, rule.name)
        return SensorKey(int(rule.sensor_id))

    def by_pattern(self) -> Dict[str, List[TopicRule]]:
        """Rules grouped by topic filter, in definition order."""
        grouped: Dict[str, List[TopicRule]] = {}
        for rule in self.rules:
            grouped.setdefault(rule.pattern, []).append(rule)
        return grouped


def build_registry(
    inline_rules: Iterable[TopicRule],
    addressing: Addressing = Addressing.SENSOR_ID,
    catalog=None,
) -> TopicRegistry:
    """
    Merge inline rules with the catalog and assign missing identities.

    ``catalog`` is anything with ``load_catalog()`` and ``register_rule(rule)``
    (the Postgres store), or None to keep identities process-local. An inline
    rule without an id takes the id of the first unclaimed catalog entry with
    the same (topic, jsonpath); an inline rule with an id replaces the catalog
    entry carrying that id. Either way the inline settings win. Catalog
    entries may share a (topic, jsonpath); each one stays a rule of its own.
    """
    catalog_rules: List[TopicRule] = []
    if catalog is not None:
        catalog_rules = [rule_from_catalog_row(row) for row in catalog.load_catalog()]
        logger.info("Loaded %d rules from catalog", len(catalog_rules))

    unclaimed: Dict[int, TopicRule] = {r.sensor_id: r for r in catalog_rules}
    by_path: Dict[Tuple[str, str], List[TopicRule]] = {}
    for r in catalog_rules:
        by_path.setdefault((r.pattern, r.jsonpath), []).append(r)

    merged: List[TopicRule] = []
    pending: List[TopicRule] = []

    for rule in inline_rules:
        if rule.sensor_id is not None:
            unclaimed.pop(rule.sensor_id, None)
            merged.append(rule)
            continue
        candidates = [
            r for r in by_path.get((rule.pattern, rule.jsonpath), [])
            if r.sensor_id in unclaimed
        ]
        if candidates:
            known = unclaimed.pop(candidates[0].sensor_id)
            merged.append(rule.with_identity(known.sensor_id))
        else:
            pending.append(rule)

    merged.extend(unclaimed.values())

    next_id = max((r.sensor_id for r in merged), default=0) + 1
    for rule in pending:
        if catalog is not None:
            sensor_id = catalog.register_rule(rule)
            logger.info("Registered %s in catalog as sensor %s", rule.label(), sensor_id)
        else:
            sensor_id = next_id
            next_id += 1
        merged.append(rule.with_identity(sensor_id))

    return TopicRegistry(merged, addressing)
