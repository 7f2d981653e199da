"""
File watching functionality using watchfiles.

Provides watch(), which follows a single file and streams a signal each time
its content may have changed. The watch ends (the handle closes) when the file
is removed or renamed, or when any symlink involved in resolving the path is
repointed, as happens when a Kubernetes ConfigMap volume is updated. The
caller then has to call watch() again on the same path.

Symlink targets cannot be observed with native notifications, so links are
polled every POLL_INTERVAL seconds: link changes are detected within about
one interval, not instantly.
"""

import asyncio
import logging
import os
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

from watchfiles import Change, awatch


logger = logging.getLogger(__name__)

# Seconds between two checks of the symlink chain
POLL_INTERVAL = 1.0

# Use rust_timeout to make awatch yield (and check the stop event) every 100ms
NOTIFY_TIMEOUT_MS = 100

# Same limit as the Linux kernel when following symlinks
MAX_SYMLINK_HOPS = 40


class WatchError(RuntimeError):
    """The file notifier could not be set up."""


@dataclass(frozen=True)
class SymlinkEdge:
    """A symlink found while resolving the watched path."""
    link: str
    target: str


def trace_symlinks(path: str) -> List[SymlinkEdge]:
    """Return the symlinks involved in resolving path, leaf-most first.

    Both links on the file itself and links on any ancestor directory are
    reported. Each edge records the raw target as returned by readlink.
    """
    chain: List[SymlinkEdge] = []
    cursor = os.path.abspath(path)

    while len(chain) < MAX_SYMLINK_HOPS:
        try:
            target = os.readlink(cursor)
        except OSError:
            # Not a symlink, ascend to the parent directory
            parent = os.path.dirname(cursor)
            if parent == cursor:
                break
            cursor = parent
            continue

        chain.append(SymlinkEdge(link=cursor, target=target))
        # Relative targets are relative to the directory holding the link
        cursor = os.path.normpath(os.path.join(os.path.dirname(cursor), target))

    return chain


async def watch_symlinks(
    cancel: asyncio.Event,
    chain: List[SymlinkEdge],
    interval: float = POLL_INTERVAL,
) -> bool:
    """Poll the chain until a link drifts from its recorded target.

    Returns:
        True when a link was repointed or could not be read anymore,
        False when cancel was set first.
    """
    if not chain:
        await cancel.wait()
        return False

    while True:
        try:
            await asyncio.wait_for(cancel.wait(), timeout=interval)
            return False
        except asyncio.TimeoutError:
            pass

        for edge in chain:
            try:
                target = os.readlink(edge.link)
            except OSError as e:
                logger.info("Symlink %s is no longer readable: %s", edge.link, e)
                return True

            if target != edge.target:
                logger.info(
                    "Symlink %s changed from %s to %s", edge.link, edge.target, target
                )
                return True


async def watch_file(
    path: str,
    stop_event: asyncio.Event,
    ready: Optional[asyncio.Event] = None,
) -> AsyncIterator[None]:
    """Yield once per content change of path, stop on removal or rename.

    The notifier is owned by this generator and released when it finishes,
    whichever way that happens.

    watchfiles merges identical changes within a batch, so a metadata change
    followed quickly by a write yields one signal, not two.

    Args:
        path: File to watch. Symlinks are followed by the notifier, not traced.
        stop_event: Set to stop watching; checked every NOTIFY_TIMEOUT_MS.
        ready: Set once the notifier is installed.
    """
    notifier = awatch(
        path,
        watch_filter=None,
        stop_event=stop_event,
        rust_timeout=NOTIFY_TIMEOUT_MS,
        yield_on_timeout=True,
        recursive=False,
    )
    async with aclosing(notifier):
        async for changes in notifier:
            if ready is not None:
                ready.set()

            kinds = [change_type for change_type, _ in changes]

            # Removal or rename away from the path, nothing left to watch
            if Change.deleted in kinds:
                logger.debug("%s was removed or renamed", path)
                return

            for change_type in kinds:
                # Some writers recreate the file instead of writing to it
                if change_type == Change.added:
                    continue
                yield None


class FileWatch:
    """Handle on a running watch, returned by watch().

    Iterating yields None each time the file content may have changed and
    should be read again. Iteration ends when the watch is over: the file was
    removed or renamed, a symlink changed, the notifier failed, or the
    cancellation event was set. The handle gives no reason; a caller that did
    not cancel should call watch() again.

    The consumer must drain the handle promptly: signals are handed over one
    at a time and the file watcher waits while one is pending.

    Usage:
        handle = await watch(cancel, "/etc/config/metrics.txt")

        async for _ in handle:
            content = Path("/etc/config/metrics.txt").read_bytes()
    """

    def __init__(
        self,
        path: str,
        cancel: asyncio.Event,
        chain: List[SymlinkEdge],
        poll_interval: float = POLL_INTERVAL,
    ):
        self.path = path
        self.chain = chain
        self._cancel = cancel
        self._poll_interval = poll_interval
        self._changes: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._ready = asyncio.Event()
        self._stop = asyncio.Event()
        self._close_requested = asyncio.Event()
        self._closed = asyncio.Event()
        self._file_task: Optional[asyncio.Task] = None
        self._chain_task: Optional[asyncio.Task] = None
        self._supervisor: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def _start(self) -> None:
        """Start both watchers and wait for the notifier to be installed."""
        self._file_task = asyncio.create_task(self._pump())
        self._chain_task = asyncio.create_task(
            watch_symlinks(self._cancel, self.chain, self._poll_interval)
        )

        ready = asyncio.create_task(self._ready.wait())
        try:
            await asyncio.wait(
                {ready, self._file_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            ready.cancel()

        if not self._ready.is_set() and self._file_task.done():
            error = None if self._file_task.cancelled() else self._file_task.exception()
            if error is not None:
                self._chain_task.cancel()
                await asyncio.gather(self._chain_task, return_exceptions=True)
                self._closed.set()
                raise WatchError(f"Failed to watch {self.path}: {error}") from error

        self._supervisor = asyncio.create_task(self._supervise())

    async def _pump(self) -> None:
        changes = watch_file(self.path, self._stop, self._ready)
        async with aclosing(changes):
            async for _ in changes:
                await self._changes.put(None)

    async def _supervise(self) -> None:
        """Close the handle on the first terminal condition."""
        cancelled = asyncio.create_task(self._cancel.wait())
        close_requested = asyncio.create_task(self._close_requested.wait())

        done, _ = await asyncio.wait(
            {self._file_task, self._chain_task, cancelled, close_requested},
            return_when=asyncio.FIRST_COMPLETED,
        )

        if cancelled in done or close_requested in done:
            logger.debug("Watch on %s cancelled", self.path)
        elif self._chain_task in done:
            error = self._chain_task.exception()
            if error is not None:
                logger.warning("Symlink watcher for %s failed: %s", self.path, error)
            elif self._chain_task.result():
                logger.info("Symlink chain of %s changed, watch ended", self.path)
        elif self._file_task in done:
            error = self._file_task.exception()
            if error is not None:
                logger.warning("File watcher for %s failed: %s", self.path, error)
            else:
                logger.info("%s was removed or renamed, watch ended", self.path)

        self._closed.set()
        self._stop.set()

        for task in (self._file_task, self._chain_task, cancelled, close_requested):
            task.cancel()
        await asyncio.gather(
            self._file_task,
            self._chain_task,
            cancelled,
            close_requested,
            return_exceptions=True,
        )

    def __aiter__(self) -> "FileWatch":
        return self

    async def __anext__(self) -> None:
        if self._closed.is_set():
            raise StopAsyncIteration

        change = asyncio.ensure_future(self._changes.get())
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({change, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            change.cancel()
            closed.cancel()

        # A signal still pending when the watch ends is dropped
        if self._closed.is_set():
            raise StopAsyncIteration

        return change.result()

    async def wait_closed(self) -> None:
        """Wait until the watch has ended and its watchers are stopped."""
        await self._closed.wait()
        if self._supervisor is not None:
            await self._supervisor

    async def aclose(self) -> None:
        """End the watch from the caller's side."""
        self._close_requested.set()
        await self.wait_closed()


async def watch(
    cancel: asyncio.Event,
    path: str,
    *,
    poll_interval: float = POLL_INTERVAL,
) -> FileWatch:
    """Start watching a file for changes.

    Args:
        cancel: Set to end the watch
        path: File to watch, possibly reached through symlinks
        poll_interval: Seconds between two checks of the symlink chain

    Returns:
        A FileWatch handle yielding once per content change

    Raises:
        FileNotFoundError: If path does not exist
        WatchError: If the file notifier could not be set up
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"File does not exist: {path}")

    chain = trace_symlinks(path)
    logger.debug("Watching %s through %d symlink(s)", path, len(chain))

    handle = FileWatch(path, cancel, chain, poll_interval)
    await handle._start()
    return handle
