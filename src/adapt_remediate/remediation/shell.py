"""
Shell command execution shared by fix actions, validation and deployment.

Each command runs as the leader of its own process group. When the timeout
expires the whole group is killed, so subshells and background children
cannot keep touching a target after the attempt has been rolled back.
"""

import logging
import os
import signal
import subprocess
from typing import Optional

logger = logging.getLogger(__name__)


def _kill_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        # group already gone
        return
    except PermissionError as e:
        logger.warning(f"Cannot kill process group {proc.pid}: {e}")
        proc.kill()


def run_shell(
    command: str,
    timeout: Optional[float],
    cwd: Optional[str] = None
) -> subprocess.CompletedProcess:
    """
    Run ``command`` through ``/bin/sh`` and capture its output.

    Args:
        command: Shell command line
        timeout: Seconds before the process group is killed
        cwd: Working directory

    Returns:
        CompletedProcess with text stdout and stderr

    Raises:
        subprocess.TimeoutExpired: After the group has been killed
        OSError: If the shell cannot be started
    """
    with subprocess.Popen(
        command,
        shell=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        cwd=cwd,
        start_new_session=True
    ) as proc:
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Killing process group {proc.pid} after {timeout}s: {command}")
            _kill_group(proc)
            proc.wait()
            raise

    return subprocess.CompletedProcess(command, proc.returncode, stdout, stderr)
