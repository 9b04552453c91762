"""
Tests for ctxmem.query — cascade stage construction and task terms.
"""

import sqlite3

import pytest

from ctxmem.query import (
    build_stages,
    build_task_query,
    extract_path_tokens,
    extract_search_terms,
    query_terms,
    run_cascade,
    sanitize_query,
)


class TestSanitize:
    def test_punctuation_to_spaces(self):
        assert sanitize_query("foo-bar!") == "foo bar"

    def test_collapse(self):
        assert sanitize_query("a -- b") == "a b"

    def test_only_punctuation(self):
        assert sanitize_query("!!!") == ""

    def test_non_ascii_letters_kept(self):
        assert sanitize_query("café!") == "café"
        assert sanitize_query("東京-tower") == "東京 tower"

    def test_underscore_is_separator(self):
        assert sanitize_query("snake_case") == "snake case"

    def test_terms_min_length(self):
        assert query_terms("an auth db token") == ["auth", "token"]


class TestBuildStages:
    def test_full_cascade(self):
        stages = build_stages("foo-bar! baz")
        assert [s for s, _ in stages] == ["LITERAL", "SANITIZED", "OR_TERMS", "FIRST_TERM"]
        assert stages[0][1] == "foo-bar! baz"
        assert stages[1][1] == "foo bar baz"
        assert stages[2][1] == '"foo" OR "bar" OR "baz"'
        assert stages[3][1] == '"foo"'

    def test_duplicate_sanitized_skipped(self):
        stages = build_stages("auth token")
        assert [s for s, _ in stages] == ["LITERAL", "OR_TERMS", "FIRST_TERM"]

    def test_single_term_has_no_or_stage(self):
        assert [s for s, _ in build_stages("auth")] == ["LITERAL", "FIRST_TERM"]

    def test_short_terms_only(self):
        assert [s for s, _ in build_stages("a-b")] == ["LITERAL", "SANITIZED"]

    def test_empty_query(self):
        assert build_stages("   ") == []

    def test_no_duplicates(self):
        texts = [t for _, t in build_stages("x.y z")]
        assert len(texts) == len(set(texts))


class TestRunCascade:
    def test_first_stage_wins(self):
        calls = []

        def fn(q):
            calls.append(q)
            return ["hit"], 3

        out = run_cascade("auth token", fn)
        assert out.stage_used == "LITERAL"
        assert out.queries_tried == ["auth token"]
        assert out.total_scanned == 3
        assert calls == ["auth token"]

    def test_advances_on_empty(self):
        def fn(q):
            return (["hit"], 1) if q == '"foo"' else ([], 0)

        out = run_cascade("foo-bar!", fn)
        assert out.stage_used == "FIRST_TERM"
        assert out.queries_tried == ["foo-bar!", "foo bar", '"foo" OR "bar"', '"foo"']

    def test_error_is_degraded(self, caplog):
        def fn(q):
            if q == "foo-bar!":
                raise sqlite3.OperationalError('fts5: syntax error near "!"')
            return ["hit"], 1

        with caplog.at_level("WARNING", logger="ctxmem.query"):
            out = run_cascade("foo-bar!", fn)
        assert out.stage_used == "SANITIZED"
        assert out.degraded[0].stage == "LITERAL"
        assert "syntax error" in out.degraded[0].error
        assert any("LITERAL" in r.message for r in caplog.records)

    def test_exhausted(self):
        out = run_cascade("nothing here", lambda q: ([], 0))
        assert out.results == []
        assert out.stage_used is None
        assert len(out.queries_tried) == 3


class TestPathTokens:
    def test_extracts_paths(self):
        assert extract_path_tokens("bug in src/auth.ts, again") == ["src/auth.ts"]

    def test_backslash(self):
        assert extract_path_tokens(r"see src\api\x") == ["src/api/x"]

    def test_dotted(self):
        assert extract_path_tokens("config.yaml") == ["config.yaml"]

    def test_none(self):
        assert extract_path_tokens("plain words only") == []


class TestTaskTerms:
    def test_stop_words_removed(self):
        assert extract_search_terms("Fix the auth bug in the login flow") == [
            "auth", "bug", "login", "flow",
        ]

    def test_limit(self):
        terms = extract_search_terms("alpha beta gamma delta epsilon zeta eta")
        assert terms == ["alpha", "beta", "gamma", "delta", "epsilon"]

    def test_punctuation_trimmed(self):
        assert extract_search_terms("(auth), please!") == ["auth", "please"]

    def test_repeated_words_kept_once(self):
        assert extract_search_terms("auth auth AUTH") == ["auth"]
        assert build_task_query("auth auth") == ("auth*", ["auth"])

    def test_repeats_do_not_count_toward_limit(self):
        terms = extract_search_terms("alpha alpha beta gamma delta epsilon", max_terms=3)
        assert terms == ["alpha", "beta", "gamma"]

    def test_single_term_prefix_query(self):
        assert build_task_query("fix auth") == ("auth*", ["auth"])

    def test_or_query(self):
        assert build_task_query("fix auth bug")[0] == "auth OR bug"

    def test_no_terms_raw_task(self):
        assert build_task_query("fix it") == ("fix it", [])
