"""
Deployment driver: rolls a validated fix out and watches health.

Strategies:
    immediate: build, shift all traffic, health check
    staged: shift through increasing traffic percentages (default
        10 -> 50 -> 100) with a pause and health check after each stage
    canary: deploy to one instance, soak, health check, then promote

Every strategy reports the same DeploymentResult shape. Any exception from
the deployment target counts as a failure and triggers the target's
rollback.

Example:
    >>> driver = DeploymentDriver(CommandDeploymentTarget(deploy_command="./deploy.sh {percentage}"))
    >>> result = driver.deploy("staged")
    >>> result.stages_completed
    3
"""

import logging
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import requests

from ..constants import (
    DEFAULT_CANARY_SOAK_SECONDS,
    DEFAULT_DEPLOY_COMMAND_TIMEOUT_SECONDS,
    DEFAULT_DEPLOY_STAGES,
    DEFAULT_STAGE_PAUSE_SECONDS,
)
from ..exceptions import DeployFailedError
from ..retry import HEALTH_CHECK_RETRY, RetryableError, RetryConfig, call_with_retry
from .shell import run_shell

logger = logging.getLogger(__name__)


class DeploymentStrategy(Enum):
    """Rollout strategy."""
    IMMEDIATE = "immediate"
    STAGED = "staged"
    CANARY = "canary"


@dataclass
class DeploymentResult:
    """Uniform result of a deployment."""

    strategy: str
    stages_completed: int
    healthy: bool
    rolled_back: bool
    error: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.healthy and self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy,
            "stages_completed": self.stages_completed,
            "healthy": self.healthy,
            "rolled_back": self.rolled_back,
            "error": self.error,
            "duration_seconds": self.duration_seconds
        }


class DeploymentTarget(ABC):
    """The system a fix is deployed to."""

    @abstractmethod
    def build(self) -> None:
        pass

    @abstractmethod
    def shift_traffic(self, percentage: int) -> None:
        """Route ``percentage`` of traffic to the new build."""
        pass

    @abstractmethod
    def deploy_canary(self) -> None:
        """Deploy the new build to a single instance."""
        pass

    @abstractmethod
    def promote(self) -> None:
        """Roll the canary out to every instance."""
        pass

    @abstractmethod
    def health_check(self) -> bool:
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Return all traffic to the previous build."""
        pass


class NullDeploymentTarget(DeploymentTarget):
    """Target used when no deployment is configured; always healthy."""

    def __init__(self):
        self.calls: List[str] = []

    def build(self) -> None:
        self.calls.append("build")

    def shift_traffic(self, percentage: int) -> None:
        self.calls.append(f"shift:{percentage}")

    def deploy_canary(self) -> None:
        self.calls.append("canary")

    def promote(self) -> None:
        self.calls.append("promote")

    def health_check(self) -> bool:
        self.calls.append("health")
        return True

    def rollback(self) -> None:
        self.calls.append("rollback")


class CommandDeploymentTarget(DeploymentTarget):
    """
    Deployment target driven by shell commands.

    ``deploy_command`` may reference ``{percentage}``. Health is checked via
    an HTTP URL (retried with backoff), a command, or assumed when neither
    is configured.

    Args:
        build_command: Build step
        deploy_command: Shifts traffic; receives ``{percentage}``
        canary_command: Deploys to a single instance
        promote_command: Full rollout after a canary (defaults to 100% shift)
        rollback_command: Restores the previous build
        health_check_url: URL that must answer 2xx
        health_check_command: Command that must exit 0
        timeout: Per-command timeout in seconds
        cwd: Working directory for commands
        retry_config: Health check retry behavior
    """

    def __init__(
        self,
        build_command: Optional[str] = None,
        deploy_command: Optional[str] = None,
        canary_command: Optional[str] = None,
        promote_command: Optional[str] = None,
        rollback_command: Optional[str] = None,
        health_check_url: Optional[str] = None,
        health_check_command: Optional[str] = None,
        timeout: float = DEFAULT_DEPLOY_COMMAND_TIMEOUT_SECONDS,
        cwd: Optional[Union[str, Path]] = None,
        retry_config: RetryConfig = HEALTH_CHECK_RETRY,
        sleep: Optional[Callable[[float], None]] = None
    ):
        self.build_command = build_command
        self.deploy_command = deploy_command
        self.canary_command = canary_command
        self.promote_command = promote_command
        self.rollback_command = rollback_command
        self.health_check_url = health_check_url
        self.health_check_command = health_check_command
        self.timeout = timeout
        self.cwd = str(cwd) if cwd is not None else None
        self.retry_config = retry_config
        self.sleep = sleep

    def _run(self, command: str) -> str:
        logger.info(f"Deploy command: {command}")
        try:
            result = run_shell(command, self.timeout, cwd=self.cwd)
        except subprocess.TimeoutExpired:
            raise DeployFailedError(f"Command timed out after {self.timeout}s: {command}")
        except OSError as e:
            raise DeployFailedError(f"Cannot execute {command}: {e}") from e

        if result.returncode != 0:
            raise DeployFailedError(
                f"Command failed ({result.returncode}): {command}: {result.stderr.strip()[:200]}"
            )
        return result.stdout

    def build(self) -> None:
        if self.build_command:
            self._run(self.build_command)

    def shift_traffic(self, percentage: int) -> None:
        if self.deploy_command:
            self._run(self.deploy_command.replace("{percentage}", str(percentage)))

    def deploy_canary(self) -> None:
        if self.canary_command:
            self._run(self.canary_command)

    def promote(self) -> None:
        if self.promote_command:
            self._run(self.promote_command)
        else:
            self.shift_traffic(100)

    def _check_url(self) -> None:
        try:
            response = requests.get(self.health_check_url, timeout=10)
        except requests.RequestException as e:
            raise RetryableError(f"Health check request failed: {e}") from e
        if not response.ok:
            raise RetryableError(f"Health check returned HTTP {response.status_code}")

    def health_check(self) -> bool:
        if self.health_check_url:
            try:
                call_with_retry(self._check_url, self.retry_config, sleep=self.sleep)
                return True
            except RetryableError as e:
                logger.error(f"Health check failed for {self.health_check_url}: {e}")
                return False

        if self.health_check_command:
            try:
                self._run(self.health_check_command)
                return True
            except DeployFailedError as e:
                logger.error(f"Health check command failed: {e}")
                return False

        return True

    def rollback(self) -> None:
        if self.rollback_command:
            self._run(self.rollback_command)


class DeploymentDriver:
    """
    Runs a deployment strategy against a target.

    Args:
        target: Deployment target (defaults to NullDeploymentTarget)
        default_strategy: Strategy used when deploy() is given none
        stages: Traffic percentages for the staged strategy
        stage_pause: Seconds to wait after each stage before checking health
        canary_soak: Seconds to observe the canary
        sleep: Sleep function (injectable for tests)
    """

    def __init__(
        self,
        target: Optional[DeploymentTarget] = None,
        default_strategy: Union[str, DeploymentStrategy] = DeploymentStrategy.IMMEDIATE,
        stages: Sequence[int] = DEFAULT_DEPLOY_STAGES,
        stage_pause: float = DEFAULT_STAGE_PAUSE_SECONDS,
        canary_soak: float = DEFAULT_CANARY_SOAK_SECONDS,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.target = target or NullDeploymentTarget()
        self.default_strategy = DeploymentStrategy(default_strategy)
        self.stages = tuple(stages)
        self.stage_pause = stage_pause
        self.canary_soak = canary_soak
        self.sleep = sleep

        if not self.stages or any(not 0 < s <= 100 for s in self.stages):
            raise ValueError(f"Invalid deployment stages: {self.stages}")
        if list(self.stages) != sorted(self.stages) or self.stages[-1] != 100:
            raise ValueError("Deployment stages must increase and end at 100")

    def _wait(self, seconds: float, cancel_event: Optional[threading.Event]) -> None:
        if seconds <= 0:
            return
        if cancel_event is not None:
            if cancel_event.wait(seconds):
                raise DeployFailedError("Deployment cancelled")
        else:
            self.sleep(seconds)

    def deploy(
        self,
        strategy: Optional[Union[str, DeploymentStrategy]] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> DeploymentResult:
        """
        Deploy using the given (or default) strategy.

        Args:
            strategy: Strategy name or enum
            cancel_event: When set during a pause, the deployment fails and
                is rolled back

        Returns:
            DeploymentResult
        """
        chosen = DeploymentStrategy(strategy) if strategy else self.default_strategy
        started = time.monotonic()
        progress = {"stages": 0}

        logger.info(f"Deploying fix ({chosen.value} strategy)")

        try:
            if chosen == DeploymentStrategy.IMMEDIATE:
                healthy = self._immediate(progress)
            elif chosen == DeploymentStrategy.STAGED:
                healthy = self._staged(progress, cancel_event)
            else:
                healthy = self._canary(progress, cancel_event)
            error = None if healthy else "Health check failed"
        except Exception as e:
            logger.error(f"Deployment failed: {e}")
            healthy = False
            error = str(e)

        rolled_back = False
        if not healthy:
            rolled_back = self._rollback()

        result = DeploymentResult(
            strategy=chosen.value,
            stages_completed=progress["stages"],
            healthy=healthy,
            rolled_back=rolled_back,
            error=error,
            duration_seconds=time.monotonic() - started
        )

        if result.success:
            logger.info(f"Deployment succeeded ({result.stages_completed} stages)")
        else:
            logger.error(
                f"Deployment failed after {result.stages_completed} stages "
                f"(rolled back: {rolled_back}): {error}"
            )
        return result

    def _rollback(self) -> bool:
        try:
            self.target.rollback()
            logger.warning("Deployment rolled back")
            return True
        except Exception as e:
            logger.error(f"Deployment rollback failed: {e}")
            return False

    def _immediate(self, progress: Dict[str, int]) -> bool:
        self.target.build()
        self.target.shift_traffic(100)
        progress["stages"] = 1
        return self.target.health_check()

    def _staged(self, progress: Dict[str, int], cancel_event: Optional[threading.Event]) -> bool:
        self.target.build()
        for percentage in self.stages:
            logger.info(f"Shifting {percentage}% of traffic")
            self.target.shift_traffic(percentage)
            progress["stages"] += 1

            if percentage < 100:
                self._wait(self.stage_pause, cancel_event)

            if not self.target.health_check():
                logger.error(f"Health check failed at {percentage}%, halting rollout")
                return False
        return True

    def _canary(self, progress: Dict[str, int], cancel_event: Optional[threading.Event]) -> bool:
        self.target.build()
        self.target.deploy_canary()
        progress["stages"] = 1

        self._wait(self.canary_soak, cancel_event)

        if not self.target.health_check():
            logger.error("Canary unhealthy, not promoting")
            return False

        self.target.promote()
        progress["stages"] = 2
        return self.target.health_check()
