"""
Fix catalog for automated remediation.

The catalog maps pattern identifiers to FixPatterns. It is an explicit
object rather than a module-level registry, so independent pipelines in the
same process can run with different catalogs.

Classes:
    FixCatalog: Thread-safe, insertion-ordered collection of fix patterns

Functions:
    load_catalog: Load patterns from a YAML or JSON file
    default_catalog: Catalog populated with the built-in patterns

Example:
    >>> from adapt_remediate.remediation import FixCatalog, default_catalog
    >>> catalog = default_catalog()
    >>> catalog.get("sec-005").risk_level
    <RiskLevel.LOW: 'low'>
"""

import json
import logging
import threading
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

import yaml
from pydantic import ValidationError

from ..exceptions import CatalogError, PatternNotFoundError
from ..models import FixPattern

logger = logging.getLogger(__name__)


BUILTIN_PATTERNS: List[Dict[str, Any]] = [
    {
        "id": "sec-001",
        "name": "Add encryption to plaintext storage",
        "description": "Encrypts plaintext data storage",
        "category": "security",
        "severities": ["critical", "high"],
        "match_expressions": [
            r"plaintext.*storage",
            r"unencrypted.*cache",
            r"sensitive data.*not encrypted",
        ],
        "actions": [
            {
                "kind": "replace-in-file",
                "find": r"fs\.writeFileSync\((.*?),\s*(.*?)\)",
                "replace": r"await this.encryption.encryptFile(\1, \2, { profile })",
                "regex": True,
            },
            {
                "kind": "insert-in-file",
                "content": "import { EncryptionManager } from '../security/encryption-manager.js';",
            },
        ],
        "confidence": 0.9,
        "validation_required": True,
        "risk_level": "medium",
        "estimated_seconds": 30,
    },
    {
        "id": "sec-002",
        "name": "Fix SQL injection vulnerability",
        "description": "Adds parameterized queries",
        "category": "security",
        "severities": ["critical", "high"],
        "match_expressions": [
            r"SQL injection",
            r"unsafe.*query",
            r"string concatenation.*SQL",
        ],
        "actions": [
            {
                "kind": "replace-in-file",
                "find": r"query\(`SELECT \* FROM .*? WHERE .*? = '\$\{(.*?)\}'`\)",
                "replace": r"query(`SELECT * FROM table WHERE column = ?`, [\1])",
                "regex": True,
            },
        ],
        "confidence": 0.95,
        "validation_required": True,
        "risk_level": "high",
        "estimated_seconds": 20,
    },
    {
        "id": "sec-003",
        "name": "Add authentication checks",
        "description": "Adds authentication verification",
        "category": "security",
        "severities": ["critical", "high"],
        "match_expressions": [
            r"authentication.*missing",
            r"unauthenticated.*access",
            r"no.*auth.*check",
        ],
        "actions": [
            {
                "kind": "insert-in-file",
                "content": (
                    "// Verify authentication\n"
                    "const authResult = await this.auth.verifySession(sessionId);\n"
                    "if (!authResult.valid) {\n"
                    "  throw new Error('Authentication required');\n"
                    "}\n"
                ),
            },
        ],
        "confidence": 0.85,
        "validation_required": True,
        "risk_level": "high",
        "estimated_seconds": 15,
    },
    {
        "id": "sec-004",
        "name": "Add rate limiting",
        "description": "Implements rate limiting",
        "category": "security",
        "severities": ["high", "medium"],
        "match_expressions": [
            r"rate limit.*exceeded",
            r"no.*rate.*limit",
            r"DOS.*vulnerability",
        ],
        "actions": [
            {
                "kind": "insert-in-file",
                "content": (
                    "// Check rate limits\n"
                    "const rateCheck = await this.rateLimiter.checkAllLimits(profile, session, tool);\n"
                    "if (!rateCheck.allowed) {\n"
                    "  throw new Error(`Rate limit exceeded. Retry in ${rateCheck.retryAfter} seconds`);\n"
                    "}\n"
                ),
            },
            {
                "kind": "insert-in-file",
                "content": "import { RateLimiter } from '../security/rate-limiter.js';",
            },
        ],
        "confidence": 0.9,
        "validation_required": True,
        "risk_level": "medium",
        "estimated_seconds": 25,
    },
    {
        "id": "sec-005",
        "name": "Fix insecure file permissions",
        "description": "Sets secure file permissions",
        "category": "security",
        "severities": ["high", "medium"],
        "match_expressions": [
            r"insecure.*permissions",
            r"world-readable",
            r"chmod\s+0?777",
        ],
        "actions": [
            {"kind": "run-command", "command": "chmod 600 {target}"},
        ],
        "confidence": 1.0,
        "validation_required": False,
        "risk_level": "low",
        "estimated_seconds": 5,
    },
    {
        "id": "sec-006",
        "name": "Remove hardcoded secrets",
        "description": "Moves secrets to environment variables",
        "category": "security",
        "severities": ["critical"],
        "match_expressions": [
            r"hardcoded.*password",
            r"hardcoded.*api[_-]?key",
            r"hardcoded.*secret",
            r"hardcoded.*token",
        ],
        "actions": [
            {
                "kind": "replace-in-file",
                "find": r"""(password|apiKey|api_key|secret|token)\s*=\s*["']([^"']+)["']""",
                "replace": r"\1 = process.env.\1.toUpperCase() || ''",
                "regex": True,
                "ignore_case": True,
            },
            {
                "kind": "insert-in-file",
                "content": "// Secret moved to environment variable. Set in .env file.",
            },
        ],
        "confidence": 0.8,
        "validation_required": True,
        "risk_level": "medium",
        "estimated_seconds": 15,
    },
    {
        "id": "runtime-001",
        "name": "Add error handling",
        "description": "Adds try-catch blocks",
        "category": "runtime",
        "severities": ["high", "medium"],
        "match_expressions": [
            r"uncaught.*exception",
            r"unhandled.*rejection",
            r"missing.*error.*handler",
        ],
        "actions": [
            {
                "kind": "replace-in-file",
                "find": r"async\s+(\w+)\s*\((.*?)\)\s*\{",
                "replace": "async \\1(\\2) {\n  try {",
                "regex": True,
            },
            {
                "kind": "insert-in-file",
                "content": (
                    "  } catch (error) {\n"
                    "    this.logger.error('Operation failed:', error);\n"
                    "    throw error;\n"
                    "  }\n"
                ),
            },
        ],
        "confidence": 0.75,
        "validation_required": True,
        "risk_level": "medium",
        "estimated_seconds": 20,
    },
    {
        "id": "syntax-001",
        "name": "Add missing imports",
        "description": "Imports required modules",
        "category": "syntax",
        "severities": ["high", "medium"],
        "match_expressions": [
            r"cannot find name",
            r"is not defined",
            r"module.*not found",
        ],
        "actions": [
            {
                "kind": "insert-in-file",
                "content": "// Auto-generated import\nimport { /* module */ } from '/* path */';\n",
            },
        ],
        "confidence": 0.7,
        "validation_required": True,
        "risk_level": "low",
        "estimated_seconds": 10,
    },
    {
        "id": "test-001",
        "name": "Update test expectations",
        "description": "Updates expected values in tests",
        "category": "test",
        "severities": ["medium", "low"],
        "match_expressions": [
            r"expected.*but got",
            r"assertion.*failed",
            r"test.*failed",
        ],
        "actions": [
            {
                "kind": "replace-in-file",
                "find": r"expect\((.*?)\)\.toBe\((.*?)\)",
                "replace": r"expect(\1).toBe(/* updated value */)",
                "regex": True,
            },
        ],
        "confidence": 0.6,
        "validation_required": True,
        "risk_level": "low",
        "estimated_seconds": 15,
    },
    {
        "id": "dep-001",
        "name": "Install missing dependencies",
        "description": "Installs the missing npm package named in the error",
        "category": "dependency",
        "severities": ["high", "medium"],
        "match_expressions": [
            r"Cannot find module ['\"](?P<module>[^'\"]+)['\"]",
            r"Module not found",
            r"ENOENT.*node_modules",
        ],
        "actions": [
            {"kind": "run-command", "command": "npm install {module}"},
        ],
        "confidence": 0.85,
        "validation_required": True,
        "risk_level": "low",
        "reversible": False,
        "estimated_seconds": 60,
    },
    {
        "id": "dep-002",
        "name": "Install missing Python package",
        "description": "Installs the missing Python distribution named in the error",
        "category": "dependency",
        "severities": ["high", "medium"],
        "match_expressions": [
            r"No module named ['\"](?P<module>[\w.]+)['\"]",
        ],
        "actions": [
            {"kind": "run-command", "command": "pip install {module}"},
        ],
        "confidence": 0.8,
        "validation_required": True,
        "risk_level": "low",
        "reversible": False,
        "estimated_seconds": 60,
    },
    {
        "id": "audit-001",
        "name": "Add audit logging",
        "description": "Adds secure audit logging",
        "category": "security",
        "severities": ["medium"],
        "match_expressions": [
            r"missing.*audit.*log",
            r"no.*logging",
            r"audit.*trail.*incomplete",
        ],
        "actions": [
            {
                "kind": "insert-in-file",
                "content": (
                    "// Audit log\n"
                    "await this.audit.log({\n"
                    "  event: 'operation_performed',\n"
                    "  profile,\n"
                    "  sessionId,\n"
                    "  timestamp: new Date(),\n"
                    "  details: { /* operation details */ }\n"
                    "});\n"
                ),
            },
            {
                "kind": "insert-in-file",
                "content": "import { SecureAuditLogger } from '../security/secure-audit-logger.js';",
            },
        ],
        "confidence": 0.8,
        "validation_required": True,
        "risk_level": "low",
        "estimated_seconds": 20,
    },
]


class FixCatalog:
    """
    Collection of fix patterns keyed by identifier.

    The catalog may be changed at runtime. ``list_all()`` returns a snapshot,
    so attempts that already ranked their candidates are unaffected by later
    additions or removals.

    Example:
        >>> catalog = FixCatalog()
        >>> catalog.add(pattern)
        >>> catalog.remove("sec-005")
        True
    """

    def __init__(self, patterns: Optional[Iterable[FixPattern]] = None):
        self._patterns: Dict[str, FixPattern] = {}
        self._lock = threading.RLock()

        for pattern in patterns or []:
            self.add(pattern)

    def add(self, pattern: FixPattern) -> None:
        """
        Add a pattern, replacing any existing pattern with the same id.

        A replaced pattern keeps its original position in the catalog order.

        Args:
            pattern: Pattern to add
        """
        with self._lock:
            replaced = pattern.id in self._patterns
            self._patterns[pattern.id] = pattern

        if replaced:
            logger.info(f"Replaced fix pattern: '{pattern.id}'")
        else:
            logger.debug(f"Registered fix pattern: '{pattern.id}' ({pattern.name})")

    def remove(self, pattern_id: str) -> bool:
        """
        Remove a pattern from the catalog.

        Args:
            pattern_id: Pattern identifier

        Returns:
            True if removed, False if not found
        """
        with self._lock:
            if pattern_id in self._patterns:
                del self._patterns[pattern_id]
                logger.info(f"Removed fix pattern: '{pattern_id}'")
                return True

        return False

    def get(self, pattern_id: str) -> Optional[FixPattern]:
        """Get pattern by id."""
        with self._lock:
            return self._patterns.get(pattern_id)

    def require(self, pattern_id: str) -> FixPattern:
        """Get pattern by id, raising PatternNotFoundError if absent."""
        pattern = self.get(pattern_id)
        if pattern is None:
            raise PatternNotFoundError(f"Fix pattern not found: {pattern_id}")
        return pattern

    def list_all(self) -> List[FixPattern]:
        """Snapshot of all patterns in insertion order."""
        with self._lock:
            return list(self._patterns.values())

    def list_ids(self) -> List[str]:
        """List all pattern identifiers."""
        with self._lock:
            return list(self._patterns.keys())

    def stats(self) -> Dict[str, Any]:
        """
        Count patterns by category, severity and risk level.

        Returns:
            Dictionary with total_patterns, by_category, by_severity, by_risk
        """
        patterns = self.list_all()
        by_category: Counter = Counter()
        by_severity: Counter = Counter()
        by_risk: Counter = Counter()

        for pattern in patterns:
            by_category[pattern.category.value] += 1
            by_risk[pattern.risk_level.value] += 1
            for severity in pattern.severities:
                by_severity[severity.value] += 1

        return {
            "total_patterns": len(patterns),
            "by_category": dict(by_category),
            "by_severity": dict(by_severity),
            "by_risk": dict(by_risk),
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._patterns)

    def __contains__(self, pattern_id: object) -> bool:
        with self._lock:
            return pattern_id in self._patterns

    def __iter__(self) -> Iterator[FixPattern]:
        return iter(self.list_all())


def _parse_patterns(entries: Iterable[Dict[str, Any]], source: str) -> List[FixPattern]:
    patterns = []
    for index, entry in enumerate(entries):
        try:
            patterns.append(FixPattern.model_validate(entry))
        except ValidationError as e:
            entry_id = entry.get("id", index) if isinstance(entry, dict) else index
            raise CatalogError(f"Invalid fix pattern {entry_id!r} in {source}: {e}") from e
    return patterns


def load_catalog(
    path: Union[str, Path],
    include_defaults: bool = False
) -> FixCatalog:
    """
    Load fix patterns from a YAML or JSON file.

    The file holds either a list of patterns or a mapping with a
    ``patterns`` key. Files ending in ``.json`` are parsed as JSON;
    anything else is parsed as YAML.

    Args:
        path: Path to the catalog file
        include_defaults: Start from the built-in patterns; file entries
            with the same id replace them

    Returns:
        Populated FixCatalog

    Raises:
        CatalogError: If the file cannot be read or a pattern is invalid
    """
    path = Path(path)

    try:
        with open(path, "r", encoding="utf-8") as f:
            if path.suffix.lower() == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except FileNotFoundError:
        raise CatalogError(f"Catalog file not found: {path}")
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise CatalogError(f"Failed to load catalog {path}: {e}") from e

    if isinstance(data, dict):
        data = data.get("patterns", [])
    if data is None:
        data = []
    if not isinstance(data, list):
        raise CatalogError(f"Catalog {path} must contain a list of patterns")

    catalog = default_catalog() if include_defaults else FixCatalog()
    for pattern in _parse_patterns(data, str(path)):
        catalog.add(pattern)

    logger.info(f"Loaded {len(data)} fix patterns from {path}")
    return catalog


def default_catalog() -> FixCatalog:
    """Create a new catalog holding the built-in patterns."""
    return FixCatalog(_parse_patterns(BUILTIN_PATTERNS, "built-in catalog"))
