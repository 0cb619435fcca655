"""
Fix applier: executes a fix pattern's actions.

Each FixAction kind has exactly one handler; the module refuses to import
if a kind is left unhandled. Actions run in declared order and the first
failure stops the fix. The applier never rolls back on its own; the
orchestrator restores from the backup store instead.

Classes:
    ActionStatus: Per-action outcome status
    ActionOutcome: Result of one action
    AppliedFix: Result of applying a whole pattern
    PlannedAction: One entry of a side-effect-free preview
    InsertionPolicy: Where inserted content goes
    ImportAwareInsertion: Imports after the last import, other content at the top
    AppendInsertion: Always append at the end of the file
    FixApplier: Applies fix patterns

Example:
    >>> applier = FixApplier()
    >>> result = applier.apply(pattern, error)
    >>> result.success
    True
"""

import hashlib
import json
import logging
import os
import re
import shlex
import stat
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import yaml

from ..constants import DEFAULT_COMMAND_TIMEOUT_SECONDS, DEFAULT_CONFIG_TARGET
from ..exceptions import RemediationError
from ..models import (
    DeleteFile,
    DetectedError,
    FixActionKind,
    FixPattern,
    InsertInFile,
    ReplaceInFile,
    RunCommand,
    UpdateConfigKey,
)
from .shell import run_shell

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{|\}\}|\{(\w+)\}")


class ActionStatus(Enum):
    """Status of one applied action."""
    MODIFIED = "modified"
    NO_OP = "no-op"
    EXECUTED = "executed"
    PLANNED = "planned"
    FAILED = "failed"


@dataclass
class ActionOutcome:
    """Result of executing one fix action."""

    kind: str
    target: Optional[str]
    status: ActionStatus
    message: str
    output: Optional[str] = None
    error: Optional[str] = None
    duration_seconds: float = 0.0
    timestamp: datetime = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now()

    @property
    def mutated(self) -> bool:
        return self.status in (ActionStatus.MODIFIED, ActionStatus.EXECUTED)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "kind": self.kind,
            "target": self.target,
            "status": self.status.value,
            "message": self.message,
            "output": self.output,
            "error": self.error,
            "duration_seconds": self.duration_seconds,
            "timestamp": self.timestamp.isoformat()
        }


@dataclass
class PlannedAction:
    """What one action would do, computed without any I/O."""

    index: int
    kind: str
    target: Optional[str]
    description: str
    mutates: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "kind": self.kind,
            "target": self.target,
            "description": self.description,
            "mutates": self.mutates
        }


@dataclass
class AppliedFix:
    """Result of applying one fix pattern."""

    pattern_id: str
    error_id: str
    dry_run: bool
    action_count: int
    targets: List[str] = field(default_factory=list)
    outcomes: List[ActionOutcome] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        """True if every action ran and none failed."""
        return (
            len(self.outcomes) == self.action_count
            and all(o.status != ActionStatus.FAILED for o in self.outcomes)
        )

    @property
    def failed_outcome(self) -> Optional[ActionOutcome]:
        for outcome in self.outcomes:
            if outcome.status == ActionStatus.FAILED:
                return outcome
        return None

    @property
    def modified_targets(self) -> List[str]:
        seen: List[str] = []
        for outcome in self.outcomes:
            if outcome.mutated and outcome.target and outcome.target not in seen:
                seen.append(outcome.target)
        return seen

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "pattern_id": self.pattern_id,
            "error_id": self.error_id,
            "dry_run": self.dry_run,
            "success": self.success,
            "targets": self.targets,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None
        }


class InsertionPolicy(ABC):
    """Decides where inserted content goes in an existing file."""

    name: str = ""

    @abstractmethod
    def insert(self, existing: str, content: str) -> str:
        """
        Return the new file text with ``content`` inserted.

        Args:
            existing: Current file text
            content: Content to insert
        """
        pass


def _as_block(content: str) -> str:
    return content if content.endswith("\n") else content + "\n"


class ImportAwareInsertion(InsertionPolicy):
    """
    Import-like content goes after the last import-like line; anything else
    goes to the top of the file.

    This is a textual heuristic, not a parser. A line counts as import-like
    when it starts with ``import``, ``from x import``, or is a
    ``require(...)`` assignment. With no existing imports, content goes to
    the top.
    """

    name = "import-aware"

    IMPORT_LINE = re.compile(
        r"^\s*(import\s|from\s+\S+\s+import\s|(const|let|var)\s+.+=\s*require\()"
    )

    def is_import_like(self, content: str) -> bool:
        return any(self.IMPORT_LINE.match(line) for line in content.splitlines())

    def insert(self, existing: str, content: str) -> str:
        block = _as_block(content)

        if not self.is_import_like(content):
            return block + existing

        lines = existing.splitlines(keepends=True)
        last_import = None
        for index, line in enumerate(lines):
            if self.IMPORT_LINE.match(line):
                last_import = index

        if last_import is None:
            return block + existing

        head = lines[:last_import + 1]
        if not head[-1].endswith("\n"):
            head[-1] += "\n"
        return "".join(head) + block + "".join(lines[last_import + 1:])


class AppendInsertion(InsertionPolicy):
    """Always append content at the end of the file."""

    name = "append"

    def insert(self, existing: str, content: str) -> str:
        if existing and not existing.endswith("\n"):
            existing += "\n"
        return existing + _as_block(content)


INSERTION_POLICIES = {
    ImportAwareInsertion.name: ImportAwareInsertion,
    AppendInsertion.name: AppendInsertion,
}


def get_insertion_policy(name: str) -> InsertionPolicy:
    """Instantiate an insertion policy by name."""
    try:
        return INSERTION_POLICIES[name]()
    except KeyError:
        raise ValueError(
            f"Unknown insertion policy '{name}'. "
            f"Valid: {', '.join(INSERTION_POLICIES)}"
        )


def _write_text_atomic(path: str, text: str) -> None:
    """Replace a file's content atomically, keeping its permission bits."""
    parent = os.path.dirname(path) or "."
    os.makedirs(parent, exist_ok=True)

    mode = None
    try:
        mode = os.stat(path).st_mode & 0o7777
    except FileNotFoundError:
        pass

    fd, tmp_name = tempfile.mkstemp(dir=parent, prefix=".fix-")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def _is_yaml(path: str) -> bool:
    return Path(path).suffix.lower() in (".yaml", ".yml")


def _lines_present(existing: str, content: str) -> bool:
    """True when every non-blank line of ``content`` is already a line of ``existing``."""
    have = {line.strip() for line in existing.splitlines()}
    wanted = [line.strip() for line in content.splitlines() if line.strip()]
    return all(line in have for line in wanted)


def _fingerprint(path: Optional[str]) -> Optional[Tuple[str, int]]:
    """sha256 and permission bits of a regular file, or None."""
    if path is None or not os.path.isfile(path):
        return None
    try:
        with open(path, "rb") as f:
            digest = hashlib.sha256(f.read()).hexdigest()
        return digest, stat.S_IMODE(os.stat(path).st_mode)
    except OSError:
        return None


class FixApplier:
    """
    Applies a fix pattern's actions to the filesystem and process environment.

    Args:
        insertion_policy: Policy name or instance for insert-in-file
        command_timeout: Default run-command timeout in seconds
        config_target: Default document for update-config-key
        base_dir: Directory that relative targets and commands resolve against
            (defaults to the current working directory)
    """

    # kind -> handler method name; checked for completeness at import time
    HANDLERS: Dict[str, str] = {
        FixActionKind.REPLACE_IN_FILE.value: "_replace_in_file",
        FixActionKind.INSERT_IN_FILE.value: "_insert_in_file",
        FixActionKind.DELETE_FILE.value: "_delete_file",
        FixActionKind.RUN_COMMAND.value: "_run_command",
        FixActionKind.UPDATE_CONFIG_KEY.value: "_update_config_key",
    }

    def __init__(
        self,
        insertion_policy: Union[str, InsertionPolicy] = "import-aware",
        command_timeout: int = DEFAULT_COMMAND_TIMEOUT_SECONDS,
        config_target: str = DEFAULT_CONFIG_TARGET,
        base_dir: Optional[Union[str, Path]] = None
    ):
        if isinstance(insertion_policy, str):
            insertion_policy = get_insertion_policy(insertion_policy)
        self.insertion_policy = insertion_policy
        self.command_timeout = command_timeout
        self.config_target = config_target
        self.base_dir = str(base_dir) if base_dir is not None else None

    def resolve_target(self, action: Any, error: DetectedError) -> Optional[str]:
        """
        Resolve the path an action operates on.

        Explicit targets win. update-config-key falls back to the configured
        config document; run-command only has a target when it names one or
        references ``{target}``; every other kind falls back to the error's
        source artifact.
        """
        if action.target:
            raw = action.target
        elif isinstance(action, UpdateConfigKey):
            raw = self.config_target
        elif isinstance(action, RunCommand):
            raw = error.source if action.references_target() else None
        else:
            raw = error.source

        if not raw:
            return None

        if self.base_dir and not os.path.isabs(raw):
            raw = os.path.join(self.base_dir, raw)
        return os.path.abspath(raw)

    def _mutates(self, action: Any, target: Optional[str]) -> bool:
        return target is not None

    def targets_for(self, pattern: FixPattern, error: DetectedError) -> List[str]:
        """Ordered, de-duplicated mutation targets of a fix."""
        targets: List[str] = []
        for action in pattern.actions:
            target = self.resolve_target(action, error)
            if self._mutates(action, target) and target not in targets:
                targets.append(target)
        return targets

    def _captures(self, pattern: FixPattern, error: DetectedError) -> Dict[str, str]:
        """Named groups captured by the pattern's expressions."""
        captures: Dict[str, str] = {}
        texts = [error.message] + ([error.stack_trace] if error.stack_trace else [])
        for regex in pattern.compiled_expressions():
            for text in texts:
                match = regex.search(text)
                if match:
                    for name, value in match.groupdict().items():
                        if value is not None:
                            captures.setdefault(name, value)
        return captures

    def render_command(
        self,
        action: RunCommand,
        target: Optional[str],
        pattern: FixPattern,
        error: DetectedError
    ) -> str:
        """
        Substitute placeholders in a command.

        ``{target}`` is the resolved target, other names come from the
        pattern's named regex groups and then the error context. All values
        are shell-quoted. ``{{`` and ``}}`` produce literal braces.

        Raises:
            KeyError: If a placeholder has no value
        """
        values: Dict[str, str] = {}
        for key, value in error.context.items():
            values[str(key)] = str(value)
        values.update(self._captures(pattern, error))
        if target is not None:
            values["target"] = target

        def substitute(match: "re.Match[str]") -> str:
            token = match.group(0)
            if token == "{{":
                return "{"
            if token == "}}":
                return "}"
            name = match.group(1)
            if name not in values:
                raise KeyError(name)
            return shlex.quote(values[name])

        return _PLACEHOLDER.sub(substitute, action.command)

    def _describe(
        self,
        action: Any,
        target: Optional[str],
        pattern: FixPattern,
        error: DetectedError
    ) -> str:
        if isinstance(action, ReplaceInFile):
            mode = "regex" if action.regex else "text"
            return f"Replace {mode} {action.find!r} in {target}"
        if isinstance(action, InsertInFile):
            return f"Insert {len(action.content)} chars into {target} ({self.insertion_policy.name})"
        if isinstance(action, DeleteFile):
            return f"Delete {target}"
        if isinstance(action, RunCommand):
            try:
                return f"Execute: {self.render_command(action, target, pattern, error)}"
            except KeyError as e:
                return f"Execute: {action.command} (unresolved placeholder {e})"
        return f"Set {action.key} = {action.value!r} in {target}"

    def preview(self, pattern: FixPattern, error: DetectedError) -> List[PlannedAction]:
        """
        Describe what applying the pattern would do. Performs no I/O.

        Args:
            pattern: Fix pattern
            error: Detected error

        Returns:
            One PlannedAction per declared action
        """
        planned = []
        for index, action in enumerate(pattern.actions):
            target = self.resolve_target(action, error)
            planned.append(PlannedAction(
                index=index,
                kind=action.kind,
                target=target,
                description=self._describe(action, target, pattern, error),
                mutates=self._mutates(action, target)
            ))
        return planned

    def apply(
        self,
        pattern: FixPattern,
        error: DetectedError,
        dry_run: bool = False,
        before_mutate: Optional[Callable[[str], None]] = None
    ) -> AppliedFix:
        """
        Apply a fix pattern's actions in order.

        Args:
            pattern: Fix pattern to apply
            error: Error being remediated
            dry_run: Plan only, with no I/O
            before_mutate: Called with each target before an action mutates
                it; raising a RemediationError fails that action

        Returns:
            AppliedFix with one outcome per executed action
        """
        result = AppliedFix(
            pattern_id=pattern.id,
            error_id=error.id,
            dry_run=dry_run,
            action_count=len(pattern.actions),
            targets=self.targets_for(pattern, error)
        )

        logger.info(
            f"{'[DRY RUN] ' if dry_run else ''}Applying fix '{pattern.id}' "
            f"({len(pattern.actions)} actions) for {error.id}"
        )

        for action in pattern.actions:
            target = self.resolve_target(action, error)

            if dry_run:
                result.outcomes.append(ActionOutcome(
                    kind=action.kind,
                    target=target,
                    status=ActionStatus.PLANNED,
                    message=f"[DRY RUN] {self._describe(action, target, pattern, error)}"
                ))
                continue

            if self._mutates(action, target) and before_mutate is not None:
                try:
                    before_mutate(target)
                except RemediationError as e:
                    outcome = ActionOutcome(
                        kind=action.kind,
                        target=target,
                        status=ActionStatus.FAILED,
                        message=f"Refusing to mutate {target}",
                        error=str(e)
                    )
                    result.outcomes.append(outcome)
                    logger.error(f"Fix '{pattern.id}' stopped: {e}")
                    break

            handler = getattr(self, self.HANDLERS[action.kind])
            start_time = datetime.now()
            outcome = handler(action, target, pattern, error)
            outcome.duration_seconds = (datetime.now() - start_time).total_seconds()
            result.outcomes.append(outcome)

            if outcome.status == ActionStatus.FAILED:
                logger.error(f"Fix '{pattern.id}' action {action.kind} failed: {outcome.message}")
                break

            logger.info(f"  {action.kind} -> {outcome.status.value}: {outcome.message}")

        result.completed_at = datetime.now()
        return result

    def _failed(self, action: Any, target: Optional[str], message: str,
                error: Optional[str] = None) -> ActionOutcome:
        return ActionOutcome(
            kind=action.kind,
            target=target,
            status=ActionStatus.FAILED,
            message=message,
            error=error or message
        )

    def _replace_in_file(self, action: ReplaceInFile, target: Optional[str],
                         pattern: FixPattern, error: DetectedError) -> ActionOutcome:
        if target is None:
            return self._failed(action, target, "No target file for replace")

        try:
            with open(target, "r", encoding="utf-8", newline="") as f:
                content = f.read()
        except (OSError, UnicodeDecodeError) as e:
            return self._failed(action, target, f"Cannot read {target}", str(e))

        flags = re.MULTILINE | (re.IGNORECASE if action.ignore_case else 0)
        try:
            if action.regex:
                updated, count = re.subn(action.find, action.replace, content, flags=flags)
            elif action.ignore_case:
                updated, count = re.subn(
                    re.escape(action.find), lambda m: action.replace, content, flags=flags
                )
            else:
                count = content.count(action.find)
                updated = content.replace(action.find, action.replace)
        except re.error as e:
            return self._failed(action, target, f"Invalid replace pattern: {e}")

        if updated == content:
            return ActionOutcome(action.kind, target, ActionStatus.NO_OP,
                                 f"No changes needed in {target}")

        try:
            _write_text_atomic(target, updated)
        except OSError as e:
            return self._failed(action, target, f"Cannot write {target}", str(e))

        return ActionOutcome(action.kind, target, ActionStatus.MODIFIED,
                             f"Replaced {count} occurrence(s) in {target}")

    def _insert_in_file(self, action: InsertInFile, target: Optional[str],
                        pattern: FixPattern, error: DetectedError) -> ActionOutcome:
        if target is None:
            return self._failed(action, target, "No target file for insert")

        try:
            with open(target, "r", encoding="utf-8", newline="") as f:
                existing = f.read()
        except FileNotFoundError:
            existing = None
        except (OSError, UnicodeDecodeError) as e:
            return self._failed(action, target, f"Cannot read {target}", str(e))

        if existing is not None and _lines_present(existing, action.content):
            return ActionOutcome(action.kind, target, ActionStatus.NO_OP,
                                 f"Content already present in {target}")

        if existing is None:
            updated = _as_block(action.content)
            message = f"Created {target}"
        else:
            updated = self.insertion_policy.insert(existing, action.content)
            message = f"Inserted content into {target} ({self.insertion_policy.name})"

        try:
            _write_text_atomic(target, updated)
        except OSError as e:
            return self._failed(action, target, f"Cannot write {target}", str(e))

        return ActionOutcome(action.kind, target, ActionStatus.MODIFIED, message)

    def _delete_file(self, action: DeleteFile, target: Optional[str],
                     pattern: FixPattern, error: DetectedError) -> ActionOutcome:
        if target is None:
            return self._failed(action, target, "No target file for delete")

        if os.path.isdir(target):
            return self._failed(action, target, f"Refusing to delete directory {target}")

        try:
            os.remove(target)
        except FileNotFoundError:
            return ActionOutcome(action.kind, target, ActionStatus.NO_OP,
                                 f"File already absent: {target}")
        except OSError as e:
            return self._failed(action, target, f"Cannot delete {target}", str(e))

        return ActionOutcome(action.kind, target, ActionStatus.MODIFIED, f"Deleted {target}")

    def _run_command(self, action: RunCommand, target: Optional[str],
                     pattern: FixPattern, error: DetectedError) -> ActionOutcome:
        try:
            command = self.render_command(action, target, pattern, error)
        except KeyError as e:
            return self._failed(action, target, f"Unresolved command placeholder {e}")

        timeout = action.timeout or self.command_timeout
        before = _fingerprint(target)
        logger.info(f"Executing command: {command}")

        try:
            result = run_shell(command, timeout, cwd=self.base_dir)
        except subprocess.TimeoutExpired:
            return self._failed(action, target, f"Command timed out after {timeout}s: {command}")
        except OSError as e:
            return self._failed(action, target, f"Cannot execute: {command}", str(e))

        if result.returncode != 0:
            return ActionOutcome(
                kind=action.kind,
                target=target,
                status=ActionStatus.FAILED,
                message=f"Command exited with {result.returncode}: {command}",
                output=result.stdout,
                error=result.stderr
            )

        if before is not None and _fingerprint(target) == before:
            return ActionOutcome(action.kind, target, ActionStatus.NO_OP,
                                 f"{target} unchanged by: {command}", output=result.stdout)

        return ActionOutcome(action.kind, target, ActionStatus.EXECUTED,
                             f"Executed: {command}", output=result.stdout)

    def _update_config_key(self, action: UpdateConfigKey, target: Optional[str],
                           pattern: FixPattern, error: DetectedError) -> ActionOutcome:
        if target is None:
            return self._failed(action, target, "No config document")

        try:
            with open(target, "r", encoding="utf-8") as f:
                document = yaml.safe_load(f) if _is_yaml(target) else json.load(f)
        except FileNotFoundError:
            document = None
        except (OSError, ValueError, yaml.YAMLError) as e:
            return self._failed(action, target, f"Cannot parse {target}", str(e))

        if document is None:
            document = {}
        if not isinstance(document, dict):
            return self._failed(action, target, f"{target} is not a mapping document")

        parts = action.key.split(".")
        node = document
        for part in parts[:-1]:
            if part not in node:
                node[part] = {}
            node = node[part]
            if not isinstance(node, dict):
                return self._failed(
                    action, target, f"Cannot set {action.key}: '{part}' is not a mapping"
                )

        leaf = parts[-1]
        if leaf in node and node[leaf] == action.value:
            return ActionOutcome(action.kind, target, ActionStatus.NO_OP,
                                 f"{action.key} already set in {target}")

        node[leaf] = action.value

        if _is_yaml(target):
            text = yaml.safe_dump(document, sort_keys=False, default_flow_style=False)
        else:
            text = json.dumps(document, indent=2) + "\n"

        try:
            _write_text_atomic(target, text)
        except OSError as e:
            return self._failed(action, target, f"Cannot write {target}", str(e))

        return ActionOutcome(action.kind, target, ActionStatus.MODIFIED,
                             f"Set {action.key} in {target}")


_unhandled = {kind.value for kind in FixActionKind} - set(FixApplier.HANDLERS)
if _unhandled:
    raise ImportError(f"No handler for fix action kinds: {sorted(_unhandled)}")
