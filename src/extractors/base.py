"""Base class for extraction strategies.

A strategy is a pure function from a parsed document (a Voyager JSON page or
a BeautifulSoup tree of the search results page) to a list of raw record
dicts. Strategies hold no state and never touch the network, so each can be
tested against a fixture in isolation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class ExtractionStrategy(ABC):
    """One way of pulling prospect records out of a document.

    Subclasses MUST set ``name`` as a class attribute and implement
    ``extract``. Returning an empty list means "this layout did not match",
    which lets the chain fall through to the next strategy.
    """

    name: str

    @abstractmethod
    def extract(self, document: Any) -> list[dict]:
        """Return raw records with keys understood by ``LeadNormalizer``.

        Recognized keys: ``profile_url``, ``name``, ``headline``,
        ``location``, ``connection_degree``, ``mutual_connections``,
        ``profile_image_url``, ``is_premium``, ``is_open_to_work``.
        """
        ...
