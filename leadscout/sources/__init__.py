from __future__ import annotations

from typing import List, Optional, Protocol

from ..cancellation import CancellationToken
from ..models import Candidate


class SearchSource(Protocol):
    """
    Map-listing search.

    Returns candidates in listing order, already filtered by minimum rating.
    Raises BrowserClosedError when the underlying browser/page went away.
    """

    async def search(
        self,
        query: str,
        location: str,
        country: str,
        *,
        min_rating: Optional[float],
        max_results: int,
        token: CancellationToken,
    ) -> List[Candidate]:
        ...

    async def close(self) -> None:
        ...
