"""
Reorder Engine - drag-and-drop resequencing within one parent

Pure functions. Cross-parent question moves are not reorders; they go
through the move workflow.
"""

import logging
from typing import Dict, List, Sequence, Tuple

logger = logging.getLogger(__name__)


def move_item(items: Sequence[int], item: int, new_index: int) -> List[int]:
    """
    Splice item out and back in at new_index (clamped to the list).

    Raises:
        ValueError: If item is not in items

    Examples:
        >>> move_item([1, 2, 3], 3, 0)
        [3, 1, 2]
    """
    order = list(items)
    order.remove(item)
    index = max(0, min(new_index, len(order)))
    order.insert(index, item)
    return order


def resequence(items: Sequence[int]) -> Dict[int, int]:
    """sort_order = index + 1 for every item."""
    return {item: index + 1 for index, item in enumerate(items)}


def plan_reorder(tree, ref: int, new_index: int) -> Tuple[List[int], Dict[int, int]]:
    """
    Compute the new sibling order for a drop.

    Args:
        tree: ContentTree
        ref: Dragged entity
        new_index: Drop position among its siblings (0-based)

    Returns:
        (new_order, orders) where orders maps every sibling, not just
        the dragged one, to its new sort_order
    """
    siblings = tree.siblings(ref, include_self=True)
    new_order = move_item(siblings, ref, new_index)
    orders = resequence(new_order)
    logger.debug(f"Reorder {ref} -> index {new_index}: {new_order}")
    return new_order, orders
