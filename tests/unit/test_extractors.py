"""Unit tests for the extraction chains, the lead normalizer and challenge detection."""

from __future__ import annotations

import pytest
from bs4 import BeautifulSoup

from src.extractors.base import ExtractionStrategy
from src.extractors.registry import StrategyChain
from src.extractors.search_results import (
    AnchorFallbackStrategy,
    default_search_chain,
    extract_search_results,
)
from src.extractors.voyager import PLACEHOLDER_NAME, degree_from_distance, parse_search_page
from src.models.normalizer import LeadNormalizer
from src.models.schemas import VOYAGER_API
from src.pipeline.captcha import detect_challenge, url_is_challenge
from tests.conftest import CAPTCHA_HTML, results_page_html

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

PRIMARY_RESULT_HTML = """
<html><body>
  <li class="search-reusables__primary-result artdeco-list__item">
    <a href="/in/jane-doe-4a1b2c3d5?mini=1"><span aria-hidden="true">Jane Doe (She/Her)</span></a>
    <div class="entity-result__primary-subtitle">VP Sales at Globex | Hiring</div>
    <div class="member-insights__reason">Sam and 12 other mutual connections</div>
    <img class="presence-entity__image" src="https://media.licdn.com/jane.jpg"/>
    <span class="premium-icon"></span>
  </li>
</body></html>
"""

ANCHOR_ONLY_HTML = """
<html><body>
  <section>
    <a href="https://www.linkedin.com/in/alex-kim/"><span aria-hidden="true">Alex Kim</span></a>
    <a href="https://www.linkedin.com/in/alex-kim/?trk=dupe">Alex Kim</a>
    <a href="https://www.linkedin.com/search/results/people/">Search</a>
  </section>
</body></html>
"""

CLUSTER_DOCUMENT = {
    "data": {
        "searchDashClustersByAll": {
            "paging": {"total": 130},
            "elements": [
                {
                    "items": [
                        {
                            "itemUnion": {
                                "entityResult": {
                                    "entityUrn": "urn:li:fsd_profile:ACoAA1",
                                    "title": {"text": "Maria Garcia"},
                                    "primarySubtitle": {"text": "Data Engineer at Initech"},
                                    "secondarySubtitle": {"text": "Madrid, Spain"},
                                    "navigationUrl": "https://www.linkedin.com/in/maria-garcia?miniProfileUrn=x",
                                    "entityCustomTrackingInfo": {"memberDistance": "DISTANCE_2"},
                                }
                            }
                        },
                        {"itemUnion": {"entityResult": {"entityUrn": "urn:li:fsd_profile:ACoAA2"}}},
                    ]
                }
            ],
        }
    },
    "included": [
        {
            "$type": "com.linkedin.voyager.dash.identity.profile.Profile",
            "entityUrn": "urn:li:fsd_profile:ACoAA2",
            "firstName": "Tom",
            "lastName": "Lee",
            "publicIdentifier": "tom-lee",
            "headline": "CTO at Hooli",
        }
    ],
}

ENTITY_DOCUMENT = {
    "included": [
        {
            "$type": "com.linkedin.voyager.dash.search.EntityResultViewModel",
            "title": {"text": "Priya Patel"},
            "navigationUrl": "https://www.linkedin.com/in/priya-patel",
            "primarySubtitle": {"text": "Designer"},
            "badgeText": {"text": "• 1st"},
        }
    ]
}

PROFILE_ONLY_DOCUMENT = {
    "included": [
        {"$type": "com.linkedin.voyager.dash.identity.profile.Profile", "entityUrn": "urn:li:fsd_profile:ACoAA9"},
    ]
}


# ---------------------------------------------------------------------------
# Strategy chain
# ---------------------------------------------------------------------------

class _Fixed(ExtractionStrategy):
    def __init__(self, name: str, records: list[dict]) -> None:
        self.name = name
        self._records = records

    def extract(self, document):
        return self._records


class TestStrategyChain:
    def test_first_non_empty_wins(self):
        chain = StrategyChain([_Fixed("empty", []), _Fixed("first", [{"a": 1}]), _Fixed("second", [{"b": 2}])])
        result = chain.run(None)
        assert result.strategy == "first"
        assert result.records == [{"a": 1}]

    def test_nothing_matches(self):
        result = StrategyChain([_Fixed("empty", [])]).run(None)
        assert result.strategy is None
        assert result.records == []

    def test_duplicate_names_rejected(self):
        chain = StrategyChain([_Fixed("x", [])])
        with pytest.raises(ValueError):
            chain.register(_Fixed("x", []))

    def test_new_layout_is_one_more_registration(self):
        chain = default_search_chain()
        chain.register(_Fixed("experimental_layout", [{"profile_url": "https://www.linkedin.com/in/new/"}]))
        assert chain.names()[-1] == "experimental_layout"
        assert chain.run(BeautifulSoup("<html></html>", "html.parser")).strategy == "experimental_layout"


# ---------------------------------------------------------------------------
# Search results page
# ---------------------------------------------------------------------------

class TestSearchResultsExtraction:
    def test_reusable_container_cards(self):
        strategy, records = extract_search_results(results_page_html(1, 3))
        assert strategy == "reusable_result_container"
        assert len(records) == 3
        first = records[0]
        assert first["name"] == "Person 1"
        assert first["headline"] == "Engineer at Company 1"
        assert first["location"] == "Berlin, Germany"
        assert first["connection_degree"] == "2nd"

    def test_primary_result_layout_fields(self):
        strategy, (record,) = extract_search_results(PRIMARY_RESULT_HTML)
        assert strategy == "primary_result"
        assert record["mutual_connections"] == 12
        assert record["profile_image_url"] == "https://media.licdn.com/jane.jpg"
        assert record["is_premium"] is True

    def test_anchor_fallback_when_no_container_matches(self):
        strategy, records = extract_search_results(ANCHOR_ONLY_HTML)
        assert strategy == "anchor_fallback"
        assert records == [{"profile_url": "https://www.linkedin.com/in/alex-kim/", "name": "Alex Kim"}]

    def test_anchor_fallback_skips_non_profile_links(self):
        soup = BeautifulSoup('<a href="https://www.linkedin.com/feed/">Feed</a>', "html.parser")
        assert AnchorFallbackStrategy().extract(soup) == []

    def test_empty_page(self):
        assert extract_search_results("") == (None, [])


# ---------------------------------------------------------------------------
# Structured API documents
# ---------------------------------------------------------------------------

class TestVoyagerExtraction:
    def test_degree_from_distance(self):
        assert degree_from_distance("DISTANCE_1") == "1st"
        assert degree_from_distance("out_of_network") == "Out of Network"
        assert degree_from_distance(None) is None

    def test_clusters_join_included_profiles(self):
        records = parse_search_page(CLUSTER_DOCUMENT)
        assert [r["name"] for r in records] == ["Maria Garcia", "Tom Lee"]
        assert records[0]["connection_degree"] == "2nd"
        assert records[1]["profile_url"] == "https://www.linkedin.com/in/tom-lee"
        assert records[1]["headline"] == "CTO at Hooli"

    def test_entity_results_fallback(self):
        (record,) = parse_search_page(ENTITY_DOCUMENT)
        assert record["name"] == "Priya Patel"
        assert record["connection_degree"] == "1st"

    def test_bare_profiles_get_placeholder_name(self):
        (record,) = parse_search_page(PROFILE_ONLY_DOCUMENT)
        assert record["name"] == PLACEHOLDER_NAME
        assert record["profile_url"] == "https://www.linkedin.com/in/ACoAA9"

    def test_non_dict_document(self):
        assert parse_search_page([]) == []


# ---------------------------------------------------------------------------
# Lead normalizer
# ---------------------------------------------------------------------------

class TestLeadNormalizer:
    def test_normalizes_card(self):
        _strategy, (raw,) = extract_search_results(PRIMARY_RESULT_HTML)
        lead = LeadNormalizer().normalize(raw)
        assert lead.profile_url == "https://www.linkedin.com/in/jane-doe-4a1b2c3d5/"
        assert lead.name == "Jane Doe"
        assert (lead.first_name, lead.last_name) == ("Jane", "Doe")
        assert lead.company == "Globex"
        assert lead.is_premium is True

    def test_name_falls_back_to_slug(self):
        lead = LeadNormalizer().normalize({"profile_url": "/in/sam-smith-123abc45", "name": "•"})
        assert lead.name == "Sam Smith"

    def test_rejects_non_profile(self):
        assert LeadNormalizer().normalize({"profile_url": "https://www.linkedin.com/company/x/", "name": "X"}) is None

    def test_normalize_many_dedupes_and_tags_source(self):
        raws = [
            {"profile_url": "https://www.linkedin.com/in/a?x=1", "name": "Ann A"},
            {"profile_url": "https://www.linkedin.com/in/a/", "name": "Ann A"},
            {"profile_url": "https://www.linkedin.com/in/b", "name": "Bob B"},
        ]
        leads = LeadNormalizer().normalize_many(raws, VOYAGER_API)
        assert [lead.name for lead in leads] == ["Ann A", "Bob B"]
        assert {lead.data_source for lead in leads} == {VOYAGER_API}


# ---------------------------------------------------------------------------
# Challenge detection
# ---------------------------------------------------------------------------

class TestChallengeDetection:
    def test_markup_indicator(self):
        check = detect_challenge(CAPTCHA_HTML)
        assert check.detected
        assert check.indicator == "captcha-internal"

    def test_text_indicator_is_case_insensitive(self):
        assert detect_challenge("<p>Please VERIFY you are human</p>").detected

    def test_url_marker_checked_first(self):
        check = detect_challenge(results_page_html(1, 1), "https://www.linkedin.com/checkpoint/challenge/123")
        assert check.detected
        assert check.indicator.startswith("url:")

    def test_clean_page(self):
        assert not detect_challenge(results_page_html(1, 2), "https://www.linkedin.com/search/results/people/").detected
        assert not detect_challenge(None).detected

    def test_url_is_challenge(self):
        assert url_is_challenge("https://www.linkedin.com/uas/login-submit")
        assert not url_is_challenge(None)

    def test_search_keywords_in_query_are_not_a_challenge(self):
        url = "https://www.linkedin.com/search/results/people/?keywords=Challenge%20Coach%20checkpoint"
        assert not url_is_challenge(url)
        assert not detect_challenge(results_page_html(1, 2), url).detected
