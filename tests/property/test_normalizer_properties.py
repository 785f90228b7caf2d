"""Property tests for name and headline cleanup."""

from __future__ import annotations

import re

from hypothesis import given, settings
from hypothesis import strategies as st

from src.models.normalizer import (
    LeadNormalizer,
    clean_name,
    clean_text,
    company_from_headline,
    name_from_profile_url,
    parse_connection_degree,
    parse_mutual_connections,
    split_name,
)

_CREDENTIALS = {"mba", "phd", "md", "cpa", "pmp", "cfa", "jd", "esq"}

words = (
    st.text(alphabet="abcdefghijklmnopqrstuvwxyz", min_size=2, max_size=10)
    .filter(lambda w: w not in _CREDENTIALS and not re.fullmatch(r"[a-f]{5,}", w))
    .map(str.title)
)
names = st.lists(words, min_size=1, max_size=3).map(" ".join)
noise = st.sampled_from(["", " · 2nd", " • 3rd", " (she/her)", " | Hiring", ", MBA", " PhD"])


@settings(max_examples=100)
@given(name=names, suffix=noise)
def test_clean_name_strips_decorations(name: str, suffix: str) -> None:
    assert clean_name(f"  <span>{name}</span>{suffix} ") == name


@settings(max_examples=100)
@given(text=st.text(alphabet="abcdefghij/ \t\n", max_size=80))
def test_clean_text_is_idempotent(text: str) -> None:
    once = clean_text(text)
    assert clean_text(once) == once
    assert once == once.strip()


@settings(max_examples=100)
@given(parts=st.lists(words, min_size=1, max_size=3), hex_id=st.text(alphabet="0123456789abcdef", min_size=6, max_size=9))
def test_slug_names_drop_hex_ids(parts: list[str], hex_id: str) -> None:
    slug = "-".join(p.lower() for p in parts) + f"-{hex_id}"
    assert name_from_profile_url(f"https://www.linkedin.com/in/{slug}/") == " ".join(parts)


@settings(max_examples=100)
@given(name=names)
def test_split_name_rejoins(name: str) -> None:
    first, last = split_name(name)
    assert " ".join(p for p in (first, last) if p) == name


@settings(max_examples=100)
@given(title=st.sampled_from(["CTO", "Founder", "Head of Sales"]), company=names, tail=st.sampled_from(["", " | Speaker", " · Advisor"]))
def test_company_inferred_from_headline(title: str, company: str, tail: str) -> None:
    assert company_from_headline(f"{title} at {company}{tail}") == company


@settings(max_examples=100)
@given(count=st.integers(min_value=0, max_value=10_000), other=st.booleans())
def test_mutual_connection_counts(count: int, other: bool) -> None:
    text = f"Jane and {count} other mutual connections" if other else f"{count} mutual connections"
    assert parse_mutual_connections(text) == count


@settings(max_examples=100)
@given(text=st.text(alphabet="abcdefghijklmnopqrstuvwxyz ", max_size=30))
def test_unrecognized_degree_defaults_to_third(text: str) -> None:
    assert parse_connection_degree(text) == "3rd"


@settings(max_examples=100)
@given(url=st.sampled_from([
    "https://www.linkedin.com/search/results/people/?keywords=x",
    "https://www.linkedin.com/feed/",
    "https://www.linkedin.com/company/acme/",
    "",
]))
def test_non_profile_links_are_dropped(url: str) -> None:
    assert LeadNormalizer().normalize({"profile_url": url, "name": "Jane Doe"}) is None
