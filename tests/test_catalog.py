"""
Tests for the fix catalog and matcher.
"""

import json

import pytest

from adapt_remediate.exceptions import CatalogError, PatternNotFoundError
from adapt_remediate.models import RiskLevel
from adapt_remediate.remediation.catalog import FixCatalog, default_catalog, load_catalog
from adapt_remediate.remediation.matcher import FixMatcher

from conftest import make_error, make_pattern


BUILTIN_IDS = [
    "sec-001", "sec-002", "sec-003", "sec-004", "sec-005", "sec-006",
    "runtime-001", "syntax-001", "test-001", "dep-001", "dep-002", "audit-001",
]


class TestFixCatalog:
    """Tests for the catalog container."""

    def test_default_catalog_contents(self):
        catalog = default_catalog()

        assert catalog.list_ids() == BUILTIN_IDS
        assert catalog.get("sec-005").risk_level == RiskLevel.LOW
        assert catalog.get("sec-005").validation_required is False

    def test_default_catalogs_are_independent(self):
        first = default_catalog()
        second = default_catalog()

        first.remove("sec-005")

        assert "sec-005" not in first
        assert "sec-005" in second

    def test_add_replaces_in_place(self):
        catalog = FixCatalog([make_pattern(id="a"), make_pattern(id="b")])

        catalog.add(make_pattern(id="a", name="Replaced"))

        assert catalog.list_ids() == ["a", "b"]
        assert catalog.get("a").name == "Replaced"

    def test_remove(self):
        catalog = FixCatalog([make_pattern(id="a")])

        assert catalog.remove("a") is True
        assert catalog.remove("a") is False
        assert len(catalog) == 0

    def test_require_missing_pattern(self):
        with pytest.raises(PatternNotFoundError):
            FixCatalog().require("nope")

    def test_list_all_is_a_snapshot(self):
        catalog = FixCatalog([make_pattern(id="a")])
        snapshot = catalog.list_all()

        catalog.add(make_pattern(id="b"))

        assert [p.id for p in snapshot] == ["a"]

    def test_stats(self):
        stats = default_catalog().stats()

        assert stats["total_patterns"] == len(BUILTIN_IDS)
        assert stats["by_category"]["security"] == 7
        assert stats["by_risk"]["low"] >= 1


class TestLoadCatalog:
    """Tests for loading catalogs from files."""

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text("""
patterns:
  - id: cfg-001
    name: Disable debug
    category: configuration
    severities: [medium]
    match_expressions: ["debug mode enabled"]
    actions:
      - kind: update-config-key
        key: debug
        value: false
    confidence: 0.9
""")

        catalog = load_catalog(path)

        assert catalog.list_ids() == ["cfg-001"]
        assert catalog.get("cfg-001").actions[0].key == "debug"

    def test_load_json_list_with_defaults(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps([
            {
                "id": "sec-005",
                "name": "Stricter permissions",
                "category": "security",
                "actions": [{"kind": "run-command", "command": "chmod 400 {target}"}],
                "confidence": 1.0,
            }
        ]))

        catalog = load_catalog(path, include_defaults=True)

        assert len(catalog) == len(BUILTIN_IDS)
        assert catalog.get("sec-005").name == "Stricter permissions"

    def test_missing_file(self, tmp_path):
        with pytest.raises(CatalogError):
            load_catalog(tmp_path / "missing.yaml")

    def test_invalid_pattern(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text("- id: bad\n  name: bad\n  category: security\n  confidence: 2\n")

        with pytest.raises(CatalogError, match="bad"):
            load_catalog(path)

    def test_not_a_list(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text("just a string\n")

        with pytest.raises(CatalogError):
            load_catalog(path)


class TestFixMatcher:
    """Tests for scoring and ranking."""

    def test_sec005_scores_ten(self):
        matcher = FixMatcher(default_catalog())
        error = make_error()

        ranked = matcher.rank(error)

        assert ranked[0].pattern.id == "sec-005"
        assert ranked[0].score == 10
        assert ranked[0].weighted == 10.0

    def test_score_components(self):
        pattern = make_pattern(
            category="runtime",
            severities=["low"],
            match_expressions=["timeout", "retry"],
        )
        matcher = FixMatcher(FixCatalog([pattern]))

        error = make_error(
            category="runtime",
            severity="low",
            message="timeout while connecting",
            stack_trace="at retry (client.js:10)\nat timeout (net.js:4)",
        )

        # 3 category + 2 severity + 5 message + 2 * 2 trace
        assert matcher.score(error, pattern) == 14

    def test_more_evidence_never_scores_lower(self):
        pattern = make_pattern(match_expressions=["insecure", "world-readable"])
        matcher = FixMatcher(FixCatalog([pattern]))

        weak = make_error(message="insecure file")
        strong = make_error(message="insecure file is world-readable")

        assert matcher.score(strong, pattern) > matcher.score(weak, pattern)

    def test_zero_score_excluded(self):
        matcher = FixMatcher(FixCatalog([make_pattern()]))
        error = make_error(category="test", severity="low", message="unrelated")

        assert matcher.find_candidates(error) == []

    def test_ties_keep_catalog_order(self):
        patterns = [make_pattern(id="first"), make_pattern(id="second")]
        matcher = FixMatcher(FixCatalog(patterns))

        assert [p.id for p in matcher.find_candidates(make_error())] == ["first", "second"]

    def test_confidence_weights_ranking(self):
        patterns = [make_pattern(id="unsure", confidence=0.3), make_pattern(id="sure")]
        matcher = FixMatcher(FixCatalog(patterns))

        assert [p.id for p in matcher.find_candidates(make_error())] == ["sure", "unsure"]

    def test_guard_excludes_pattern(self):
        pattern = make_pattern(when={"field": "context.env", "op": "==", "value": "prod"})
        matcher = FixMatcher(FixCatalog([pattern]))

        assert matcher.find_candidates(make_error(context={"env": "dev"})) == []
        assert matcher.find_candidates(make_error(context={"env": "prod"})) == [pattern]
