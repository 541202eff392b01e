"""
Continuation-token pagination for metadata listings.

A request carries a page size and an optional token; the response carries at
most ``page_size`` items and, when more remain, a token naming the next
unreturned item. An absent token means "start" on a request and "exhausted"
on a response:

    START --(page, token)--> IN_PROGRESS --(page, token)--> ... --(page, None)--> DONE
"""

from bisect import bisect_left
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field, replace
from enum import Enum
import logging
from typing import Generic, TypeVar

from spillway.exceptions import CapabilityMismatch

logger = logging.getLogger(__name__)

T = TypeVar("T")

UNLIMITED_PAGE_SIZE = -1


class PaginationState(Enum):
    START = "start"
    IN_PROGRESS = "in_progress"
    DONE = "done"


def state_of(token: str | None, is_response: bool) -> PaginationState:
    """
    Interpret a token.

    An absent or empty token is START on a request and DONE on a response.
    """
    if token:
        return PaginationState.IN_PROGRESS
    return PaginationState.DONE if is_response else PaginationState.START


@dataclass(frozen=True)
class ListRequest:
    page_size: int = UNLIMITED_PAGE_SIZE
    continuation_token: str | None = None

    def with_token(self, token: str | None) -> "ListRequest":
        return replace(self, continuation_token=token)


@dataclass(frozen=True)
class ListResponse(Generic[T]):
    items: list[T] = field(default_factory=list)
    next_token: str | None = None

    @property
    def done(self) -> bool:
        return state_of(self.next_token, is_response=True) is PaginationState.DONE


def paginate(
    items: Iterable[T],
    request: ListRequest,
    key: Callable[[T], str] = str,
) -> ListResponse[T]:
    """
    Cut one page out of a listing.

    Items are ordered by ``key`` (duplicates collapse to the first) so that the
    same request always yields the same page.

    Args:
        items: Every item of the listing, in any order.
        request: Page size and continuation token.
        key: Identifier of an item; tokens are identifiers.

    Returns:
        ListResponse: The page and the identifier of the next item, if any.

    Raises:
        CapabilityMismatch: If the page size is invalid or the token names no item.
    """
    page_size = request.page_size
    if page_size != UNLIMITED_PAGE_SIZE and page_size < 1:
        raise CapabilityMismatch(f"Invalid page size {page_size}")

    ordered: list[T] = []
    keys: list[str] = []
    for item in sorted(items, key=key):
        item_key = key(item)
        if keys and keys[-1] == item_key:
            continue
        ordered.append(item)
        keys.append(item_key)

    start = 0
    token = request.continuation_token
    if token:
        start = bisect_left(keys, token)
        if start == len(keys) or keys[start] != token:
            raise CapabilityMismatch(f"Continuation token {token!r} does not match this listing")

    end = len(ordered) if page_size == UNLIMITED_PAGE_SIZE else min(start + page_size, len(ordered))
    next_token = keys[end] if end < len(ordered) else None

    logger.debug(
        "Listing page [%d:%d] of %d items, next token %s", start, end, len(ordered), next_token
    )
    return ListResponse(items=ordered[start:end], next_token=next_token)


def iter_pages(
    fetch: Callable[[ListRequest], ListResponse[T]],
    page_size: int = UNLIMITED_PAGE_SIZE,
) -> Iterator[ListResponse[T]]:
    """
    Follow continuation tokens until a response has none.

    Raises:
        CapabilityMismatch: If a response hands back the token it was asked with.
    """
    request = ListRequest(page_size=page_size)
    while True:
        response = fetch(request)
        yield response
        if response.done:
            return
        if response.next_token == request.continuation_token:
            raise CapabilityMismatch(f"Listing did not advance past token {response.next_token!r}")
        request = request.with_token(response.next_token)
