"""
Grouped concurrent execution for terminology server calls.

Items are processed in fixed-size groups; each group runs on a thread pool and a short pause
separates groups to stay under the server's rate limits. Results are keyed by item, so
sequential and concurrent runs produce the same mapping.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List

logger = logging.getLogger(__name__)


@dataclass
class GroupedBatchResult:
    """Outcome of a grouped batch run"""
    results: Dict[str, Any] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    group_count: int = 0
    processing_time: float = 0.0

    @property
    def total_items(self) -> int:
        return len(self.results) + len(self.errors)


def unique_in_order(items: Iterable[str]) -> List[str]:
    return [item for item in dict.fromkeys(items) if item]


def run_in_groups(
    items: Iterable[str],
    func: Callable[[str], Any],
    group_size: int,
    pause_seconds: float = 0.0,
    concurrent: bool = True,
    label: str = "batch",
) -> GroupedBatchResult:
    """
    Apply func to every unique item, group by group.

    Args:
        items: keys to process; duplicates and empty values are skipped
        func: called once per item; an exception fails that item only
        group_size: items per group (and pool size when concurrent)
        pause_seconds: sleep between groups, not after the last one
        concurrent: run each group on a thread pool; False runs items one by one
        label: name used in log messages

    Returns:
        GroupedBatchResult with per-item results and errors
    """
    unique_items = unique_in_order(items)
    outcome = GroupedBatchResult()
    if not unique_items:
        return outcome

    group_size = max(1, group_size)
    start_time = time.time()

    for start in range(0, len(unique_items), group_size):
        group = unique_items[start:start + group_size]
        outcome.group_count += 1

        if concurrent and len(group) > 1:
            with ThreadPoolExecutor(max_workers=len(group)) as executor:
                future_to_item = {executor.submit(func, item): item for item in group}
                for future in as_completed(future_to_item):
                    item = future_to_item[future]
                    try:
                        outcome.results[item] = future.result()
                    except Exception as e:
                        logger.warning(f"{label}: item {item} failed: {e}")
                        outcome.errors[item] = str(e)
        else:
            for item in group:
                try:
                    outcome.results[item] = func(item)
                except Exception as e:
                    logger.warning(f"{label}: item {item} failed: {e}")
                    outcome.errors[item] = str(e)

        if pause_seconds > 0 and start + group_size < len(unique_items):
            time.sleep(pause_seconds)

    outcome.processing_time = time.time() - start_time
    logger.debug(
        f"{label}: {len(outcome.results)} ok, {len(outcome.errors)} failed in {outcome.group_count} groups"
    )
    return outcome
