"""Parsers for the structured people-search API response.

The response shape drifts, so parsing is a cascade of three strategies:

1. ``clusters``: ``data.searchDashClustersByAll.elements[].items[]`` whose
   ``itemUnion.entityResult`` holds title/subtitles, joined to the
   ``included`` profile map for missing fields.
2. ``included_entities``: any ``included`` item whose ``$type`` contains
   ``EntityResult``.
3. ``included_profiles``: bare ``Profile`` records, which carry nothing but an
   id, so the name is a placeholder.
"""

from __future__ import annotations

import re

from src.extractors.base import ExtractionStrategy
from src.extractors.registry import StrategyChain

_PUBLIC_ID_RE = re.compile(r"linkedin\.com/in/([^/?#]+)")

_DISTANCE_DEGREES = {
    "DISTANCE_1": "1st",
    "DISTANCE_2": "2nd",
    "DISTANCE_3": "3rd",
    "OUT_OF_NETWORK": "Out of Network",
}

PLACEHOLDER_NAME = "LinkedIn User"


def degree_from_distance(distance: str | None) -> str | None:
    """Map ``DISTANCE_2`` style values to ``2nd``."""
    if not distance:
        return None
    return _DISTANCE_DEGREES.get(distance.upper())


def _text(node: object) -> str:
    if isinstance(node, dict):
        return node.get("text") or ""
    return node if isinstance(node, str) else ""


def _cluster_elements(data: dict) -> list:
    body = data.get("data") or {}
    for container in (body, body.get("data") or {}):
        if not isinstance(container, dict):
            continue
        for key in ("searchDashClustersByAll", "searchDashClusters"):
            elements = (container.get(key) or {}).get("elements")
            if elements:
                return elements
        if container.get("elements"):
            return container["elements"]
    return []


def _image_url(entity: dict) -> str | None:
    try:
        attributes = entity["image"]["attributes"]
        picture = attributes[0]["detailDataUnion"]["nonEntityProfilePicture"]
        artifacts = picture["vectorImage"]["artifacts"]
        root = picture["vectorImage"].get("rootUrl", "")
        return root + artifacts[-1]["fileIdentifyingUrlPathSegment"]
    except (KeyError, IndexError, TypeError):
        return None


def _entity_degree(entity: dict) -> str | None:
    tracking = entity.get("entityCustomTrackingInfo") or {}
    degree = degree_from_distance(tracking.get("memberDistance"))
    if degree:
        return degree
    badge = _text(entity.get("badgeText"))
    for value in ("1st", "2nd", "3rd"):
        if value in badge:
            return value
    return None


class ClusterStrategy(ExtractionStrategy):
    name = "clusters"

    def extract(self, document: dict) -> list[dict]:
        profiles: dict[str, dict] = {}
        for item in document.get("included") or []:
            if "Profile" in (item.get("$type") or "") or item.get("publicIdentifier"):
                key = item.get("entityUrn") or item.get("$id")
                if key:
                    profiles[key] = item

        records: list[dict] = []
        for cluster in _cluster_elements(document):
            for item in cluster.get("items") or []:
                entity = (item.get("itemUnion") or {}).get("entityResult") or item.get("entity")
                if not entity:
                    continue
                profile = profiles.get(entity.get("entityUrn") or entity.get("urn") or "", {})

                name = _text(entity.get("title"))
                if not name and profile.get("firstName"):
                    name = f"{profile['firstName']} {profile.get('lastName') or ''}".strip()
                if not name:
                    continue

                profile_url = entity.get("navigationUrl") or (
                    f"https://www.linkedin.com/in/{profile['publicIdentifier']}"
                    if profile.get("publicIdentifier")
                    else ""
                )
                records.append(
                    {
                        "profile_url": profile_url,
                        "name": name,
                        "headline": _text(entity.get("primarySubtitle")) or profile.get("headline"),
                        "location": _text(entity.get("secondarySubtitle")) or profile.get("locationName"),
                        "connection_degree": _entity_degree(entity),
                        "profile_image_url": _image_url(entity),
                    }
                )
        return records


class IncludedEntityStrategy(ExtractionStrategy):
    name = "included_entities"

    def extract(self, document: dict) -> list[dict]:
        records: list[dict] = []
        for item in document.get("included") or []:
            if "EntityResult" not in (item.get("$type") or ""):
                continue
            url = item.get("navigationUrl") or ""
            title = _text(item.get("title"))
            if not title and not _PUBLIC_ID_RE.search(url):
                continue
            records.append(
                {
                    "profile_url": url,
                    "name": title or PLACEHOLDER_NAME,
                    "headline": _text(item.get("primarySubtitle")),
                    "location": _text(item.get("secondarySubtitle")),
                    "connection_degree": _entity_degree(item),
                }
            )
        return records


class IncludedProfileStrategy(ExtractionStrategy):
    name = "included_profiles"

    def extract(self, document: dict) -> list[dict]:
        records: list[dict] = []
        for item in document.get("included") or []:
            if "Profile" not in (item.get("$type") or ""):
                continue
            profile_id = item.get("publicIdentifier") or (item.get("entityUrn") or "").replace(
                "urn:li:fsd_profile:", ""
            )
            if not profile_id:
                continue
            first = item.get("firstName")
            name = f"{first} {item.get('lastName') or ''}".strip() if first else PLACEHOLDER_NAME
            records.append(
                {
                    "profile_url": f"https://www.linkedin.com/in/{profile_id}",
                    "name": name,
                    "headline": item.get("headline"),
                }
            )
        return records


def default_voyager_chain() -> StrategyChain:
    return StrategyChain([ClusterStrategy(), IncludedEntityStrategy(), IncludedProfileStrategy()])


def parse_search_page(document: dict, chain: StrategyChain | None = None) -> list[dict]:
    """Raw records from one API page; the first strategy with results wins."""
    if not isinstance(document, dict):
        return []
    return (chain or default_voyager_chain()).run(document).records
