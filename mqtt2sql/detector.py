"""
Change detection against the last persisted value per partition key.
"""

import logging
from typing import Dict

from .registry import PartitionKey
from .values import DEFAULT_FLOAT_TOLERANCE, TypedValue, ValueType, values_equal

logger = logging.getLogger(__name__)


class ChangeDetector:
    """
    Keeps the last persisted value per key in memory. A key missing from the
    cache is looked up once in the store (latest row) and the result cached;
    keys with no stored row are looked up again until something is written.

    ``store`` needs ``fetch_last(key, value_type) -> TypedValue | None``.
    """

    def __init__(self, store, float_tolerance: float = DEFAULT_FLOAT_TOLERANCE):
        self.store = store
        self.float_tolerance = float_tolerance
        self.last_values: Dict[PartitionKey, TypedValue] = {}
        self.store_lookups = 0

    def previous(self, key: PartitionKey, value_type: ValueType) -> TypedValue | None:
        cached = self.last_values.get(key)
        if cached is not None:
            return cached

        self.store_lookups += 1
        stored = self.store.fetch_last(key, value_type)
        if stored is not None:
            logger.debug("Seeded last value for %s from store: %s", key, stored)
            self.last_values[key] = stored
        return stored

    def should_persist(self, key: PartitionKey, candidate: TypedValue) -> bool:
        previous = self.previous(key, candidate.type)
        if previous is None:
            return True
        return not values_equal(previous, candidate, self.float_tolerance)

    def remember(self, key: PartitionKey, value: TypedValue) -> None:
        self.last_values[key] = value
