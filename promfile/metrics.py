"""
Metrics file loading and reload loop.

MetricsStore keeps the last good content of the served file. follow() keeps it
fresh: it reloads on every change signal and starts a new watch whenever the
previous one ends, until cancelled.
"""

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Optional

from .filewatch import POLL_INTERVAL, WatchError, watch


logger = logging.getLogger(__name__)

# Seconds to wait before watching again a file that is missing
RETRY_INTERVAL = 1.0


class MetricsFileError(ValueError):
    """The metrics file could not be read or has invalid content."""


def load_metrics(path: str) -> bytes:
    """Read and validate the metrics file.

    Args:
        path: File to read

    Returns:
        File content

    Raises:
        MetricsFileError: If the file cannot be read or is empty
    """
    try:
        data = Path(path).read_bytes()
    except OSError as e:
        raise MetricsFileError(f"Error reading {path}: {e}") from e

    # Basic check only, the content is served as is
    if not data:
        raise MetricsFileError(f"Metrics file is empty: {path}")

    return data


class MetricsStore:
    """Last good content of the metrics file plus reload counters."""

    def __init__(self, path: str):
        self.path = path
        self.content: Optional[bytes] = None
        self.last_reload: Optional[int] = None
        self.reloads = 0
        self.failures = 0
        self.watches = 0

    def reload(self) -> bool:
        """Load the file again, keeping the previous content on failure.

        Returns:
            True if the content was replaced
        """
        try:
            data = load_metrics(self.path)
        except MetricsFileError as e:
            self.failures += 1
            logger.warning("Failed to reload metrics: %s", e)
            return False

        self.content = data
        self.last_reload = int(time.time())
        self.reloads += 1
        logger.info("Metrics file reloaded (%d bytes)", len(data))
        return True


async def _sleep_or_cancel(cancel: asyncio.Event, delay: float) -> bool:
    """Sleep for delay seconds. Returns True if cancel was set meanwhile."""
    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay)
        return True
    except asyncio.TimeoutError:
        return False


async def follow(
    store: MetricsStore,
    cancel: asyncio.Event,
    *,
    poll_interval: float = POLL_INTERVAL,
    retry_interval: float = RETRY_INTERVAL,
) -> None:
    """Keep store up to date with its file until cancel is set.

    Each watch is followed by a reload: when a symlink swap ended the previous
    watch, the content changed without any change signal. Reloading once the
    notifier is live means a write made meanwhile is either read here or
    signalled.
    """
    while not cancel.is_set():
        if not os.path.exists(store.path):
            logger.warning("%s does not exist, retrying in %.1fs", store.path, retry_interval)
            if await _sleep_or_cancel(cancel, retry_interval):
                return
            continue

        try:
            handle = await watch(cancel, store.path, poll_interval=poll_interval)
        except (FileNotFoundError, WatchError) as e:
            logger.warning("Failed to watch %s: %s", store.path, e)
            store.reload()
            if await _sleep_or_cancel(cancel, retry_interval):
                return
            continue

        store.reload()
        store.watches += 1
        logger.info("Watching %s for changes", store.path)

        try:
            async for _ in handle:
                logger.info("Metrics file modified, reloading...")
                store.reload()
        finally:
            await handle.aclose()

        if not cancel.is_set():
            logger.info("Watch on %s ended, watching again", store.path)
