"""
Pagination helpers for remote listing APIs.

Both the Identity Store API (``NextToken``) and LDAP paged searches
(paged-results cookie) hand back an opaque continuation token. The
reconciliation engine needs fully materialized snapshots, so listings are
drained completely before anything is compared.
"""

import logging
from typing import Any, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class PaginationError(Exception):
    """Raised when a listing API misbehaves while paging."""
    pass


def drain_pages(
    fetch_page: Callable[[Optional[Any]], Tuple[List[Any], Optional[Any]]],
    description: str = 'listing',
    max_pages: Optional[int] = None
) -> List[Any]:
    """
    Fetch every page of a listing and return all items in order.

    Args:
        fetch_page: Callable taking the continuation token (None for the first
            page) and returning ``(items, next_token)``. A falsy next token
            ends the listing.
        description: Label used in log messages
        max_pages: Optional safety limit on the number of pages

    Returns:
        List of every item across all pages

    Raises:
        PaginationError: If the API repeats a continuation token or the page
            limit is exceeded
    """
    results = []
    seen_tokens = set()
    token = None
    page_count = 0

    while True:
        items, next_token = fetch_page(token)
        page_count += 1
        results.extend(items)
        logger.debug(f"{description}: page {page_count} returned {len(items)} items")

        if not next_token:
            break

        if next_token in seen_tokens:
            raise PaginationError(f"{description}: continuation token repeated on page {page_count}")
        seen_tokens.add(next_token)

        if max_pages and page_count >= max_pages:
            raise PaginationError(f"{description}: exceeded {max_pages} pages")

        token = next_token

    logger.debug(f"{description}: {len(results)} items across {page_count} pages")
    return results
