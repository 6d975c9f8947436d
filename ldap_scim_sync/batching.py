"""
Chunking of bulk membership changes.

The target's bulk membership operation accepts at most 100 member ids per
request. Changes are split into ordered chunks, one request per chunk, and
application stops at the first failed chunk.
"""

import logging
from typing import Callable, Iterator, List, Sequence, TypeVar

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 100

OP_ADD = 'add'
OP_REMOVE = 'remove'

T = TypeVar('T')


class BatchApplyError(Exception):
    """
    Raised when a membership chunk fails.

    Chunks applied before the failure stay applied; ``applied_chunks`` and
    ``applied_members`` say how far the change got.
    """

    def __init__(self, group_id: str, op: str, applied_chunks: int,
                 applied_members: int, cause: Exception):
        self.group_id = group_id
        self.op = op
        self.applied_chunks = applied_chunks
        self.applied_members = applied_members
        self.cause = cause
        super().__init__(
            f"Membership {op} on group {group_id} failed after {applied_chunks} "
            f"chunk(s) ({applied_members} members applied): {cause}"
        )


def chunked(items: Sequence[T], size: int = MAX_BATCH_SIZE) -> Iterator[List[T]]:
    """
    Yield consecutive chunks of ``items`` in their original order.

    Raises:
        ValueError: If size is outside 1..100
    """
    if size < 1 or size > MAX_BATCH_SIZE:
        raise ValueError(f"Batch size must be between 1 and {MAX_BATCH_SIZE}, got {size}")

    items = list(items)
    for start in range(0, len(items), size):
        yield items[start:start + size]


def apply_member_batches(
    patch: Callable[[str, str, List[str]], None],
    group_id: str,
    op: str,
    member_ids: Sequence[str],
    size: int = MAX_BATCH_SIZE
) -> int:
    """
    Apply one membership operation to a group in chunks.

    Args:
        patch: Callable ``patch(group_id, op, member_ids)`` issuing one request
        group_id: Target group id
        op: ``add`` or ``remove``; a call never mixes the two
        member_ids: Member ids in the order they should be applied
        size: Maximum members per request

    Returns:
        Number of requests issued

    Raises:
        BatchApplyError: On the first failed chunk
    """
    if op not in (OP_ADD, OP_REMOVE):
        raise ValueError(f"Unsupported membership operation: {op}")

    requests = 0
    applied = 0
    for chunk in chunked(member_ids, size):
        try:
            patch(group_id, op, chunk)
        except Exception as e:
            logger.error(f"Membership {op} chunk {requests + 1} for group {group_id} failed; "
                         f"{applied} members already applied")
            raise BatchApplyError(group_id, op, requests, applied, e) from e
        requests += 1
        applied += len(chunk)
        logger.debug(f"Membership {op} chunk {requests} for group {group_id}: {len(chunk)} members")

    return requests
