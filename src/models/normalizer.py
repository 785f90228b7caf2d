"""Lead normalization logic.

Turns raw card/record dicts produced by the extractors into validated
``Lead`` models. Handles:
- HTML tag stripping and whitespace normalization for all string values
- Profile URL canonicalization (https, desktop host, no query/fragment)
- Display-name cleaning (degree badges, pronouns, credential suffixes)
- Name derivation from the profile URL slug when the card has no name
- Company inference from the headline ("Engineer at Acme | ...")
- Deterministic lead ids so re-inserting a profile is idempotent
"""

from __future__ import annotations

import re
import uuid
from urllib.parse import urlparse, urlunparse

from pydantic import ValidationError

from src.models.schemas import LINKEDIN_SEARCH, Lead

# Regex for stripping HTML tags
_HTML_TAG_RE = re.compile(r"<[^>]+>")

_DEGREE_BADGE_RE = re.compile(r"\s*[·|•]\s*(1st|2nd|3rd|you)\b", re.IGNORECASE)
_PARENTHETICAL_RE = re.compile(r"\s*\([^)]*\)")
_PIPE_TAIL_RE = re.compile(r"\s*\|\s*.*")
_CREDENTIAL_SUFFIX_RE = re.compile(r"[\s,]*\b(MBA|PhD|MD|CPA|PMP|CFA|JD|Esq\.?)\s*$", re.IGNORECASE)
_BOILERPLATE_RE = re.compile(r"LinkedIn Member|View profile|Connect with", re.IGNORECASE)
_COMPANY_RE = re.compile(r"(?:\bat|@)\s+(.+?)(?:\s*[|·•]|$)", re.IGNORECASE)
_HEX_PART_RE = re.compile(r"^[a-f0-9]{5,}$")
_PROFILE_SLUG_RE = re.compile(r"/in/([^/?#]+)")
_MUTUAL_RE = re.compile(r"(\d+)\s*(?:other\s+)?mutual", re.IGNORECASE)

# Namespace for deterministic lead ids
LEAD_ID_NAMESPACE = uuid.UUID("6f1c7f0e-3d4b-5a8e-9c2d-1b7e4a9f0c11")


def strip_html(text: str) -> str:
    """Strip HTML tags from a string."""
    return _HTML_TAG_RE.sub("", text)


def normalize_whitespace(text: str) -> str:
    """Collapse multiple whitespace characters into a single space and trim."""
    return re.sub(r"\s+", " ", text).strip()


def clean_text(text: str) -> str:
    """Strip HTML tags, normalize whitespace, and trim a text value."""
    return normalize_whitespace(strip_html(text))


def normalize_profile_url(url: str) -> str:
    """Canonicalize a profile URL.

    Forces https and the desktop ``www.linkedin.com`` host, converts mobile
    paths, and drops the query string and fragment. Non-profile URLs are
    returned cleaned but otherwise untouched.
    """
    url = url.strip()
    if not url:
        return url

    if url.startswith("//"):
        url = "https:" + url
    elif url.startswith("/"):
        url = "https://www.linkedin.com" + url
    elif not url.startswith(("http://", "https://")):
        url = "https://" + url

    parsed = urlparse(url)
    netloc = parsed.netloc.lower()
    path = parsed.path.replace("/m/", "/").replace("/mwlite/", "/")

    if netloc.endswith("linkedin.com"):
        netloc = "www.linkedin.com"
        slug = _PROFILE_SLUG_RE.search(path)
        if slug:
            path = f"/in/{slug.group(1)}/"

    return urlunparse(("https", netloc, path, "", "", ""))


def is_profile_url(url: str) -> bool:
    """True for member profile links, excluding search/feed pages."""
    return "/in/" in url and "/search/" not in url and "/feed/" not in url


def lead_id(workspace_id: str, profile_url: str) -> str:
    """Deterministic id for a (workspace, profile) pair.

    The same pair always yields the same id, which makes persisting a lead
    twice a no-op at the storage layer.
    """
    key = f"{workspace_id}:{normalize_profile_url(profile_url)}"
    return str(uuid.uuid5(LEAD_ID_NAMESPACE, key))


def clean_name(raw: str) -> str:
    """Remove degree badges, pronouns, pipe tails and credential suffixes."""
    name = clean_text(raw)
    name = _DEGREE_BADGE_RE.sub("", name)
    name = _PARENTHETICAL_RE.sub("", name)
    name = _PIPE_TAIL_RE.sub("", name)
    name = _BOILERPLATE_RE.sub("", name)
    name = _CREDENTIAL_SUFFIX_RE.sub("", name)
    return normalize_whitespace(name).strip(" ,")


def name_from_profile_url(profile_url: str) -> str:
    """Derive a display name from the profile slug, dropping hex id parts."""
    match = _PROFILE_SLUG_RE.search(profile_url)
    if not match:
        return ""
    parts = [
        part for part in match.group(1).split("-")
        if part and not _HEX_PART_RE.match(part) and not part.isdigit()
    ]
    return " ".join(part[:1].upper() + part[1:].lower() for part in parts)


def split_name(name: str) -> tuple[str | None, str | None]:
    """Split a display name into (first, last)."""
    parts = name.split(" ")
    first = parts[0] if parts and parts[0] else None
    last = " ".join(parts[1:]) or None
    return first, last


def company_from_headline(headline: str | None) -> str | None:
    """Infer the current company from headlines like ``"CTO at Acme | ..."``."""
    if not headline:
        return None
    match = _COMPANY_RE.search(headline)
    if not match:
        return None
    return match.group(1).strip() or None


def parse_connection_degree(text: str | None) -> str:
    """Map a badge text to a connection degree; anything unrecognized is 3rd."""
    text = text or ""
    if "1st" in text:
        return "1st"
    if "2nd" in text:
        return "2nd"
    return "3rd"


def parse_mutual_connections(text: str | None) -> int:
    if not text:
        return 0
    match = _MUTUAL_RE.search(text)
    return int(match.group(1)) if match else 0


class LeadNormalizer:
    """Transforms raw extraction dicts into validated ``Lead`` models."""

    def normalize(self, raw: dict, data_source: str = LINKEDIN_SEARCH) -> Lead | None:
        """Normalize one raw record.

        Steps:
        1. Canonicalize the profile URL, rejecting non-profile links
        2. Clean the display name, falling back to the URL slug
        3. Clean every other string value
        4. Fill in first/last name and company when the record lacks them
        5. Validate into a ``Lead``; invalid records are dropped (``None``)
        """
        raw_url = raw.get("profile_url") or ""
        if not raw_url or not is_profile_url(raw_url):
            return None
        profile_url = normalize_profile_url(raw_url)

        name = clean_name(raw.get("name") or "")
        if len(name) < 2:
            name = name_from_profile_url(profile_url)
        if not name:
            return None

        headline = _clean_optional(raw.get("headline"))
        first_name, last_name = split_name(name)

        data = {
            "profile_url": profile_url,
            "name": name,
            "first_name": _clean_optional(raw.get("first_name")) or first_name,
            "last_name": _clean_optional(raw.get("last_name")) or last_name,
            "headline": headline,
            "company": _clean_optional(raw.get("company")) or company_from_headline(headline),
            "location": _clean_optional(raw.get("location")),
            "connection_degree": raw.get("connection_degree") or None,
            "mutual_connections": raw.get("mutual_connections"),
            "profile_image_url": raw.get("profile_image_url") or None,
            "is_premium": bool(raw.get("is_premium")),
            "is_open_to_work": bool(raw.get("is_open_to_work"))
            or "open to work" in (headline or "").lower(),
            "data_source": data_source,
        }

        try:
            return Lead.model_validate(data)
        except ValidationError:
            return None

    def normalize_many(self, raws: list[dict], data_source: str = LINKEDIN_SEARCH) -> list[Lead]:
        """Normalize a batch, dropping invalid records and duplicate profiles."""
        seen: set[str] = set()
        leads: list[Lead] = []
        for raw in raws:
            lead = self.normalize(raw, data_source)
            if lead is None or lead.profile_url in seen:
                continue
            seen.add(lead.profile_url)
            leads.append(lead)
        return leads


def _clean_optional(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = clean_text(value)
    return cleaned or None
