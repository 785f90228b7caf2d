"""Output schemas for retrieved prospects.

All fields except ``profile_url`` and ``name`` are optional so that partial
extractions succeed: missing fields are ``None`` rather than failing
validation.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

ConnectionDegree = Literal["1st", "2nd", "3rd", "Out of Network"]

# Where a lead came from: the structured API tier or the browser tier.
VOYAGER_API = "voyager_api"
LINKEDIN_SEARCH = "linkedin_search"

# Column order for CSV export.
EXPORT_HEADERS: list[str] = [
    "profileUrl",
    "name",
    "firstName",
    "lastName",
    "headline",
    "company",
    "location",
    "connectionDegree",
    "mutualConnections",
    "isPremium",
    "isOpenToWork",
]


class Lead(BaseModel):
    """One extracted prospect profile."""

    profile_url: str = Field(..., min_length=1)
    name: str
    first_name: str | None = None
    last_name: str | None = None
    headline: str | None = None
    company: str | None = None
    location: str | None = None
    connection_degree: ConnectionDegree | None = None
    mutual_connections: int | None = None
    profile_image_url: str | None = None
    is_premium: bool = False
    is_open_to_work: bool = False
    data_source: str = LINKEDIN_SEARCH

    def export_row(self) -> list[object]:
        """Values in ``EXPORT_HEADERS`` order."""
        return [
            self.profile_url,
            self.name,
            self.first_name or "",
            self.last_name or "",
            self.headline or "",
            self.company or "",
            self.location or "",
            self.connection_degree or "",
            self.mutual_connections if self.mutual_connections is not None else "",
            self.is_premium,
            self.is_open_to_work,
        ]

    def export_record(self) -> dict:
        """camelCase record matching the CSV headers, for JSON exports."""
        return dict(zip(EXPORT_HEADERS, [
            self.profile_url,
            self.name,
            self.first_name,
            self.last_name,
            self.headline,
            self.company,
            self.location,
            self.connection_degree,
            self.mutual_connections,
            self.is_premium,
            self.is_open_to_work,
        ]))
