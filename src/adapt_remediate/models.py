"""
Data models for ADAPT-Remediate using Pydantic for validation.

DetectedError is the immutable input produced by external error sources.
FixPattern and FixAction describe catalog entries; FixAction is a closed
tagged union over the five supported action kinds.
"""
import re
from datetime import datetime
from enum import Enum
from functools import lru_cache
from typing import Annotated, Any, Dict, FrozenSet, List, Literal, Optional, Union

from dateutil import parser as date_parser
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .exceptions import InvalidRuleError
from .rules import RuleExpression, parse_rule


@lru_cache(maxsize=1024)
def _parse_timestamp_cached(timestamp_str: str) -> Optional[datetime]:
    """Parse a timestamp string, caching repeated formats."""
    try:
        return date_parser.parse(timestamp_str)
    except (ValueError, TypeError, OverflowError):
        return None


@lru_cache(maxsize=512)
def compile_expression(expression: str) -> "re.Pattern[str]":
    """Compile a fix-pattern match expression (case-insensitive)."""
    return re.compile(expression, re.IGNORECASE)


class ErrorCategory(str, Enum):
    """Category of a detected error."""
    SECURITY = "security"
    RUNTIME = "runtime"
    SYNTAX = "syntax"
    TEST = "test"
    DEPENDENCY = "dependency"


class Severity(str, Enum):
    """Severity of a detected error."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RiskLevel(str, Enum):
    """Risk classification of a fix; drives the approval gate."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class FixActionKind(str, Enum):
    """Closed set of fix action kinds."""
    REPLACE_IN_FILE = "replace-in-file"
    INSERT_IN_FILE = "insert-in-file"
    DELETE_FILE = "delete-file"
    RUN_COMMAND = "run-command"
    UPDATE_CONFIG_KEY = "update-config-key"


def _lower(v: Any) -> Any:
    return v.lower() if isinstance(v, str) else v


class DetectedError(BaseModel):
    """
    An error reported by an external detector.

    Attributes:
        id: Stable error identifier (deduplication key)
        category: Error category
        severity: Error severity
        source: Originating artifact path
        message: Free-text error message
        stack_trace: Optional stack/trace text
        context: Free-form context map
        timestamp: When the error was detected
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    category: ErrorCategory
    severity: Severity
    source: str = ""
    message: str
    stack_trace: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)

    @field_validator("category", "severity", mode="before")
    @classmethod
    def normalize_enum(cls, v: Any) -> Any:
        """Accept enum values in any case."""
        return _lower(v)

    @field_validator("timestamp", mode="before")
    @classmethod
    def parse_timestamp(cls, v: Any) -> Any:
        """Parse timestamp from ISO 8601 or other common formats.

        Unparseable strings fall back to the current time so that a bad
        detector timestamp never blocks remediation.
        """
        if v is None:
            return datetime.now()
        if isinstance(v, str):
            return _parse_timestamp_cached(v) or datetime.now()
        return v


class _BaseAction(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    target: Optional[str] = None


class ReplaceInFile(_BaseAction):
    """Find/replace in a file. ``find`` is literal unless ``regex`` is set."""

    kind: Literal["replace-in-file"] = "replace-in-file"
    find: str = Field(min_length=1)
    replace: str
    regex: bool = False
    ignore_case: bool = False


class InsertInFile(_BaseAction):
    """Insert content into a file at a policy-chosen position."""

    kind: Literal["insert-in-file"] = "insert-in-file"
    content: str = Field(min_length=1)


class DeleteFile(_BaseAction):
    """Delete a file."""

    kind: Literal["delete-file"] = "delete-file"


class RunCommand(_BaseAction):
    """
    Run a shell command.

    The command may reference ``{target}`` (shell-quoted resolved target)
    and any key of the detected error's context.
    """

    kind: Literal["run-command"] = "run-command"
    command: str = Field(min_length=1)
    timeout: Optional[int] = Field(default=None, gt=0)

    def references_target(self) -> bool:
        return "{target}" in self.command


class UpdateConfigKey(_BaseAction):
    """Set a dotted-path key in a structured config document."""

    kind: Literal["update-config-key"] = "update-config-key"
    key: str = Field(min_length=1)
    value: Any = None


FixAction = Annotated[
    Union[ReplaceInFile, InsertInFile, DeleteFile, RunCommand, UpdateConfigKey],
    Field(discriminator="kind"),
]


class FixPattern(BaseModel):
    """
    Catalog entry mapping an error signature to corrective actions.

    Attributes:
        id: Pattern identifier
        name: Human-readable name
        description: What the fix does
        category: Applicable error category
        severities: Applicable severities
        match_expressions: Regexes evaluated against message and trace
        actions: Ordered fix actions
        confidence: Static confidence in [0, 1]
        validation_required: Whether the validation suite must pass
        risk_level: Risk classification for the approval gate
        reversible: Whether the fix can be undone from backups
        estimated_seconds: Rough expected duration
        when: Optional guard rule; the pattern only applies when it holds
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    id: str = Field(min_length=1)
    name: str
    description: str = ""
    category: ErrorCategory
    severities: FrozenSet[Severity] = Field(default_factory=frozenset)
    match_expressions: List[str] = Field(default_factory=list)
    actions: List[FixAction] = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)
    validation_required: bool = True
    risk_level: RiskLevel = RiskLevel.MEDIUM
    reversible: bool = True
    estimated_seconds: int = 0
    when: Optional[RuleExpression] = None

    @field_validator("category", "risk_level", mode="before")
    @classmethod
    def normalize_enum(cls, v: Any) -> Any:
        return _lower(v)

    @field_validator("severities", mode="before")
    @classmethod
    def normalize_severities(cls, v: Any) -> Any:
        if v is None:
            return frozenset()
        if isinstance(v, str):
            v = [v]
        return frozenset(_lower(item) for item in v)

    @field_validator("match_expressions")
    @classmethod
    def check_expressions(cls, v: List[str]) -> List[str]:
        """Reject match expressions that are not valid regular expressions."""
        for expression in v:
            try:
                compile_expression(expression)
            except re.error as e:
                raise ValueError(f"Invalid match expression {expression!r}: {e}")
        return v

    @field_validator("when", mode="before")
    @classmethod
    def parse_when(cls, v: Any) -> Any:
        if v is None:
            return None
        try:
            return parse_rule(v)
        except InvalidRuleError as e:
            raise ValueError(str(e))

    def compiled_expressions(self) -> List["re.Pattern[str]"]:
        return [compile_expression(expression) for expression in self.match_expressions]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-compatible dictionary."""
        data = self.model_dump(mode="json", exclude={"when"})
        data["severities"] = sorted(s.value for s in self.severities)
        data["when"] = self.when.to_dict() if self.when else None
        return data
