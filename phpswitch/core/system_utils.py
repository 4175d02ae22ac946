import subprocess
import shlex
import shutil
import logging
from typing import List, Tuple, Optional

logger = logging.getLogger(__name__)

# Return codes used when the process never produced one
CODE_NOT_FOUND = -1
CODE_ERROR = -2
CODE_TIMEOUT = -3


def run_command(command_list: List[str], timeout: Optional[float] = None) -> Tuple[int, str, str]:
    """Runs a system command and captures output/return code.

    Args:
        command_list: The command and its arguments.
        timeout: Seconds to wait before the process is killed. None waits forever.

    Returns:
        (return_code, stdout, stderr) with both streams stripped. Negative codes
        mean the command could not be run (see CODE_* constants).
    """
    joined_command = shlex.join(command_list)
    logger.debug(f"SYSTEM_UTILS: Running command: {joined_command}")
    try:
        result = subprocess.run(
            command_list,
            capture_output=True,
            text=True,
            check=False,
            encoding='utf-8',
            errors='replace',
            timeout=timeout
        )
        if result.returncode != 0:
            log_message = (
                f"SYSTEM_UTILS: Command failed (Code: {result.returncode}): {joined_command}\n"
                f"  Stdout: {result.stdout.strip()}\n"
                f"  Stderr: {result.stderr.strip()}"
            )
            logger.debug(log_message)
        return result.returncode, result.stdout.strip(), result.stderr.strip()
    except FileNotFoundError:
        msg = f"SYSTEM_UTILS: Command not found: {command_list[0]}"
        logger.error(msg)
        return CODE_NOT_FOUND, "", msg
    except subprocess.TimeoutExpired:
        # subprocess.run kills the child before re-raising
        msg = f"SYSTEM_UTILS: Command timed out after {timeout}s: {joined_command}"
        logger.warning(msg)
        return CODE_TIMEOUT, "", msg
    except Exception as e:
        msg = f"SYSTEM_UTILS: Error running command '{joined_command}': {e}"
        logger.error(msg, exc_info=True)
        return CODE_ERROR, "", msg


def find_executables(name: str, path_value: str) -> List[str]:
    """Lists every executable called `name` found along a PATH string, in order."""
    found: List[str] = []
    for directory in path_value.split(":"):
        if not directory:
            continue
        candidate = shutil.which(name, path=directory)
        if candidate and candidate not in found:
            found.append(candidate)
    return found
