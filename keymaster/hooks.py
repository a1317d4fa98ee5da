"""Pre-connect hook execution."""

import asyncio
import logging
import os
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


async def run_preconnect_hook(
    path: Optional[str],
    broadcast: Callable[[str], None],
    env: Optional[Dict[str, str]] = None,
) -> Optional[int]:
    """Run the pre-connect hook at *path* and report how it went.

    Output lines and the exit status are passed to *broadcast*. A missing,
    unlaunchable or failing hook never raises; the return value is the
    exit code, or ``None`` when the hook did not run.
    """
    if not path or not os.path.exists(path):
        broadcast("No pre-connection hook has been configured.")
        return None

    hook_env = dict(os.environ)
    if env:
        hook_env.update(env)

    try:
        process = await asyncio.create_subprocess_exec(
            path,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=hook_env,
        )
    except OSError as exc:
        logger.debug("Unable to launch hook %s", path, exc_info=True)
        broadcast(f"Pre-connect hook ({path}) failed to start: {exc}")
        return None

    try:
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").rstrip()
            if line:
                broadcast(line)
        returncode = await process.wait()
    finally:
        if process.returncode is None:
            process.kill()
            await process.wait()

    if returncode == 0:
        broadcast(f"Pre-connect hook ({path}) ran successfully with exit code: 0")
    else:
        broadcast(f"Pre-connect hook ({path}) failed with exit code: {returncode}")
    return returncode
