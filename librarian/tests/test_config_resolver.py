"""Tests for per-application configuration resolution."""

import pytest

from librarian.retriever.config_resolver import (
    DEFAULT_LIBRARIAN_CONFIG,
    ConfigResolver,
    LibrarianConfig,
    parse_librarian_config,
)

from .conftest import FakeStore


def _config_row(org_id=None, app_id="arpet", **parameters):
    return {
        "agent_type": "librarian_v3",
        "app_id": app_id,
        "org_id": org_id,
        "is_active": True,
        "system_prompt": f"prompt for {org_id or 'global'}",
        "gemini_system_prompt": None,
        "parameters": parameters,
    }


class TestParseLibrarianConfig:
    def test_empty_row_gives_defaults(self):
        cfg = parse_librarian_config({}, source="fallback")

        assert cfg.match_count == 8
        assert cfg.match_threshold == 0.35
        assert cfg.gemini_max_pages == 450
        assert cfg.max_tokens == 6400
        assert cfg.temperature == 0.3
        assert cfg.memory_similarity_threshold == 0.85
        assert cfg.config_source == "fallback"

    def test_malformed_values_fall_back_per_field(self):
        row = _config_row(
            search={"match_count": "twelve", "match_threshold": 1.7, "boost_factor": 2.5},
            generation={"max_tokens": -1, "gemini_max_pages": 300, "temperature": None},
        )

        cfg = parse_librarian_config(row)

        assert cfg.match_count == 8
        assert cfg.match_threshold == 0.35
        assert cfg.boost_factor == 2.5
        assert cfg.max_tokens == 6400
        assert cfg.gemini_max_pages == 300
        assert cfg.temperature == 0.3

    def test_zero_falls_back_except_temperature(self):
        row = _config_row(
            search={"match_count": 0},
            generation={"temperature": 0},
        )

        cfg = parse_librarian_config(row)

        assert cfg.match_count == 8
        assert cfg.temperature == 0.0

    def test_fractional_count_is_rejected(self):
        cfg = parse_librarian_config(_config_row(search={"match_count": 7.5}))
        assert cfg.match_count == 8

    def test_intent_config_merges_over_defaults(self):
        row = _config_row(search={"intent_config": {"factual": {"max_files": 3}}})

        cfg = parse_librarian_config(row)

        assert cfg.intent_config["factual"].max_files == 3
        assert cfg.intent_config["factual"].min_similarity == 0.5
        assert cfg.intent_config["synthesis"].max_files == 5

    def test_new_intent_uses_injected_defaults(self):
        defaults = LibrarianConfig(match_count=20, match_threshold=0.6, gemini_max_files=9)
        row = _config_row(search={"intent_config": {"Procedure": {"max_files": 2}}})

        cfg = parse_librarian_config(row, defaults)

        assert cfg.intent_config["procedure"].max_files == 2
        assert cfg.intent_config["procedure"].match_count == 20
        assert cfg.intent_config["procedure"].min_similarity == 0.6

    def test_legacy_and_sources_sections(self):
        row = _config_row(
            legacy={"qa_memory_similarity_threshold": 0.9, "conversation_timeout_minutes": 45},
            sources={"filter_by_citation": True},
            cache={"ttl_minutes": 120},
        )

        cfg = parse_librarian_config(row)

        assert cfg.memory_similarity_threshold == 0.9
        assert cfg.conversation_timeout_minutes == 45
        assert cfg.filter_sources_by_citation is True
        assert cfg.cache_ttl_minutes == 120

    def test_intent_overrides(self):
        row = _config_row(generation={"intent_overrides": {
            "synthesis": {"temperature": 0.7, "gemini_model": "gemini-2.5-pro"},
            "factual": "not a dict",
        }})

        cfg = parse_librarian_config(row)

        assert cfg.intent_overrides["synthesis"].temperature == 0.7
        assert cfg.intent_overrides["synthesis"].gemini_model == "gemini-2.5-pro"
        assert cfg.intent_overrides["synthesis"].max_tokens is None
        assert "factual" not in cfg.intent_overrides


class TestConfigResolver:
    @pytest.fixture
    def store(self):
        fake = FakeStore()
        fake.table("config", "agent_prompts").extend([
            _config_row(org_id=None, search={"match_count": 10}),
            _config_row(org_id="org-1", search={"match_count": 20}),
        ])
        return fake

    @pytest.mark.asyncio
    async def test_org_record_wins(self, store):
        cfg = await ConfigResolver(store).resolve("arpet", "org-1")

        assert cfg.config_source == "org"
        assert cfg.match_count == 20
        assert cfg.system_prompt == "prompt for org-1"

    @pytest.mark.asyncio
    async def test_global_record_without_org_match(self, store):
        cfg = await ConfigResolver(store).resolve("arpet", "org-2")

        assert cfg.config_source == "global"
        assert cfg.match_count == 10

    @pytest.mark.asyncio
    async def test_inactive_records_are_ignored(self, store):
        for row in store.table("config", "agent_prompts"):
            row["is_active"] = False

        cfg = await ConfigResolver(store).resolve("arpet", "org-1")

        assert cfg.config_source == "fallback"
        assert cfg.match_count == DEFAULT_LIBRARIAN_CONFIG.match_count

    @pytest.mark.asyncio
    async def test_other_application_falls_back(self, store):
        cfg = await ConfigResolver(store).resolve("other-app", "org-1")
        assert cfg.config_source == "fallback"

    @pytest.mark.asyncio
    async def test_store_failure_is_not_fatal(self, store):
        store.failing.add("config.agent_prompts")

        cfg = await ConfigResolver(store).resolve("arpet", "org-1")

        assert cfg.config_source == "fallback"
        assert cfg.match_count == 8
