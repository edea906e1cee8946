"""Tests for temporal normalization, synonym expansion and entity extraction."""

from __future__ import annotations

from datetime import date

import pytest

from conftest import NOW
from lifelog_search.models import DateRange, QueryIntent
from lifelog_search.query_preprocessor import QueryPreprocessor, start_of_week


@pytest.fixture
def preprocessor():
    return QueryPreprocessor(now=lambda: NOW)


# ---------------------------------------------------------------------------
# Temporal normalization
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "query, expected",
    [
        ("lunch today", "lunch 2024-03-15"),
        ("standup yesterday", "standup 2024-03-14"),
        ("dentist tomorrow", "dentist 2024-03-16"),
        ("notes from this week", "notes from 2024-03-10 to 2024-03-16"),
        ("notes from last week", "notes from 2024-03-03 to 2024-03-09"),
        ("spending this month", "spending 2024-03-01 to 2024-03-31"),
        ("spending last month", "spending 2024-02-01 to 2024-02-29"),
        ("call 3 days ago", "call 2024-03-12"),
        ("runs in the last 7 days", "runs in the 2024-03-08 to 2024-03-15"),
    ],
)
def test_relative_expressions_become_iso_dates(preprocessor, query, expected):
    assert preprocessor.normalize_temporal_expressions(query) == expected


def test_week_starts_on_sunday():
    assert start_of_week(date(2024, 3, 15)) == date(2024, 3, 10)
    assert start_of_week(date(2024, 3, 10)) == date(2024, 3, 10)


def test_temporal_info_collects_resolved_and_explicit_dates(preprocessor):
    info = preprocessor.preprocess("meetings today and on 2024-03-01").temporal_info

    assert info.dates == [date(2024, 3, 15), date(2024, 3, 1)]
    assert info.relative_time == "today"
    assert info.has_references


def test_explicit_iso_range_is_a_range_not_two_dates(preprocessor):
    info = preprocessor.preprocess("trips 2024-01-01 to 2024-01-31").temporal_info

    assert info.date_ranges == [DateRange(start=date(2024, 1, 1), end=date(2024, 1, 31))]
    assert info.dates == []


def test_query_without_temporal_references(preprocessor):
    info = preprocessor.preprocess("smoothie king").temporal_info
    assert not info.has_references
    assert info.relative_time is None


# ---------------------------------------------------------------------------
# Synonym expansion
# ---------------------------------------------------------------------------


def test_original_query_is_first_variant(preprocessor):
    variants = preprocessor.expand_query_with_synonyms("Budget meeting")
    assert variants[0] == "Budget meeting"
    assert "budget discussion" in variants
    assert "expenses meeting" in variants


def test_pairwise_substitutions_are_generated(preprocessor):
    variants = preprocessor.expand_query_with_synonyms("budget meeting")
    assert "financial plan discussion" in variants
    assert len(variants) == len(set(variants))


def test_query_without_synonyms_expands_to_itself(preprocessor):
    assert preprocessor.expand_query_with_synonyms("smoothie") == ["smoothie"]


def test_custom_synonym_map():
    preprocessor = QueryPreprocessor(now=lambda: NOW, synonym_map={"run": ["run", "jog"]})
    assert preprocessor.expand_query_with_synonyms("morning run") == ["morning run", "morning jog"]


# ---------------------------------------------------------------------------
# Intent, entities and keywords
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "query, intent",
    [
        ("what did Sarah say", QueryIntent.QUESTION),
        ("find the budget", QueryIntent.COMMAND),
        ("meetings today", QueryIntent.TEMPORAL_QUERY),
        ("lunch with Sarah", QueryIntent.PERSON_QUERY),
        ("spending trends", QueryIntent.ANALYTICAL),
        ("smoothie king", QueryIntent.SEARCH),
    ],
)
def test_intent_detection(preprocessor, query, intent):
    assert preprocessor.detect_query_intent(query) == intent


def test_named_entities(preprocessor):
    entities = preprocessor.extract_named_entities("lunch with Sarah at Smoothie King about the budget")

    assert entities.people == ["Sarah"]
    assert entities.places == ["Smoothie King"]
    assert "budget" in entities.topics


def test_weekday_names_are_not_people(preprocessor):
    entities = preprocessor.extract_named_entities("call with Monday")
    assert entities.people == []


def test_keywords_come_from_normalized_text(preprocessor):
    preprocessed = preprocessor.preprocess("what did Sarah say today")

    assert "today" not in preprocessed.keywords
    assert "sarah" in preprocessed.keywords
    assert "did" not in preprocessed.keywords
    assert preprocessed.normalized == "what did Sarah say 2024-03-15"
    assert preprocessed.original == "what did Sarah say today"
