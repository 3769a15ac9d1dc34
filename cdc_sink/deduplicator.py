"""
Batch deduplication

Reduces the events of one sub-batch to a single winner per canonical key.
The winner is the maximum under the total order

    (logical timestamp, operation priority, arrival index)

so the reduction is associative and commutative: any grouping or processing
order of the events yields the same winner. Arrival index only matters when
timestamp and operation are both equal, in which case the later arrival wins.
"""

import logging
from functools import reduce
from typing import Dict, Iterable, List, Mapping, Optional

from cdc_sink.events import CanonicalKey, DecodedEvent, Operation, OPERATION_PRIORITY

logger = logging.getLogger(__name__)


class BatchDeduplicator:
    """Picks the winning event per key within a sub-batch"""

    def __init__(self, operation_priority: Optional[Mapping[Operation, int]] = None):
        """
        Args:
            operation_priority: Tie-break ranking (defaults to c=1, r=2, u=3, d=4)
        """
        self.operation_priority = dict(operation_priority or OPERATION_PRIORITY)
        missing = [op.value for op in Operation if op not in self.operation_priority]
        if missing:
            raise ValueError(f"operation_priority is missing operation(s): {', '.join(missing)}")

    def ordering(self, event: DecodedEvent) -> tuple:
        return (event.timestamp, self.operation_priority[event.operation], event.arrival_index)

    def pick_winner(self, left: DecodedEvent, right: DecodedEvent) -> DecodedEvent:
        """Return whichever of two same-key events should survive"""
        return right if self.ordering(right) > self.ordering(left) else left

    def deduplicate(self, events: Iterable[DecodedEvent]) -> Dict[CanonicalKey, DecodedEvent]:
        """
        Group events by canonical key and reduce each group to its winner

        Args:
            events: Keyed events of one destination table

        Returns:
            dict: canonical key -> winning event
        """
        groups: Dict[CanonicalKey, List[DecodedEvent]] = {}
        for event in events:
            if event.key is None:
                raise ValueError(f"{event.destination}: keyless events cannot be deduplicated")
            groups.setdefault(event.key, []).append(event)

        winners = {key: reduce(self.pick_winner, group) for key, group in groups.items()}

        total = sum(len(group) for group in groups.values())
        if total > len(winners):
            logger.debug(f"Deduplicated {total} events to {len(winners)} keys "
                         f"({total - len(winners)} superseded)")

        return winners
