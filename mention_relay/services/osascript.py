"""Run AppleScript snippets through osascript."""

import asyncio
import logging
import shutil

logger = logging.getLogger(__name__)


def osascript_available() -> bool:
    return shutil.which("osascript") is not None


async def run_osascript(script: str, *args: str) -> tuple[int, str, str]:
    """
    Run an AppleScript and return (returncode, stdout, stderr).

    Arguments are passed as ``argv`` to the script's ``on run`` handler,
    so user text never has to be quoted into the script source.

    Args:
        script: AppleScript source.
        *args: Values for the script's argv.

    Returns:
        Tuple of (return_code, stdout, stderr).
    """
    cmd = ["osascript", "-e", script, *args]
    logger.debug("Running osascript with %d argument(s)", len(args))

    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    stdout_bytes, stderr_bytes = await process.communicate()
    stdout = stdout_bytes.decode("utf-8", errors="replace").strip()
    stderr = stderr_bytes.decode("utf-8", errors="replace").strip()

    returncode = process.returncode or 0
    if returncode != 0:
        logger.warning("osascript failed (exit code %d): %s", returncode, stderr)

    return returncode, stdout, stderr
