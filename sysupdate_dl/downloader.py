"""
System update downloader
Resolves the content graph of a system update and downloads every meta and
content NCA with a bounded thread pool.

Resolution runs as a work queue: each pass downloads the current frontier of
meta titles in parallel, decodes them, and the meta entries they list become
the next frontier. Content is downloaded in one final pass once no meta
entries remain.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import BinaryIO, Callable, Iterable, List, Optional, Sequence, Tuple

from sysupdate_dl import constants
from sysupdate_dl.api import CdnClient
from sysupdate_dl.errors import ConfigurationError
from sysupdate_dl.models import ContentEntry, ContentGraphEntry, MetaEntry, SysUpdateMeta
from sysupdate_dl.progress import ProgressReporter
from sysupdate_dl.resolver import ContentGraphResolver, require_homogeneous, require_kind, split_entries

# meta_handler(data, title_id, content_id, version, url)
MetaHandler = Callable[[bytes, str, str, str, Optional[str]], None]
# content_handler(stream, content_id, url)
ContentHandler = Callable[[BinaryIO, str, Optional[str]], None]


@dataclass
class DownloaderConfig:
    """
    Settings for SysUpdateDownloader.

    Handlers are called from worker threads and must be thread safe when
    max_parallelism > 1. Content is not downloaded at all without a content handler.

    Attributes:
        client: CDN client
        resolver: Content graph resolver
        max_parallelism: Maximum concurrent requests per pass (at least 1)
        meta_handler: Called for every downloaded meta NCA
        content_handler: Called with the stream of every content NCA
        show_progress: Draw progress lines (still only on a terminal)
        verbose: Verbose logging is active (disables progress lines)
    """
    client: CdnClient
    resolver: ContentGraphResolver
    max_parallelism: int = constants.DEFAULT_MAX_JOBS
    meta_handler: Optional[MetaHandler] = None
    content_handler: Optional[ContentHandler] = None
    show_progress: bool = True
    verbose: bool = False


@dataclass
class DownloadSummary:
    """
    Result of a full system update download.

    meta_titles counts every meta title fetched across all passes, not counting the root.
    """
    sys_update: SysUpdateMeta
    meta_titles: int = 0
    contents: List[ContentEntry] = field(default_factory=list)
    contents_downloaded: int = 0


class EntryAccumulator:
    """Thread-safe, append-only collection of entries, deduplicated by key."""

    def __init__(self, entries: Iterable[ContentGraphEntry] = ()):
        self._lock = threading.Lock()
        self._keys = set()
        self._entries: List[ContentGraphEntry] = []
        self.extend(entries)

    def extend(self, entries: Iterable[ContentGraphEntry]) -> None:
        with self._lock:
            for entry in entries:
                if entry.key not in self._keys:
                    self._keys.add(entry.key)
                    self._entries.append(entry)

    def items(self) -> List[ContentGraphEntry]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class SysUpdateDownloader:
    """
    Downloads a system update: meta titles first, then their contents.

    Any failed job aborts the run; files already written are left in place.
    """

    def __init__(self, config: DownloaderConfig, logger: Optional[logging.Logger] = None):
        """
        Initialize the downloader.

        Args:
            config: Downloader settings
            logger: Logger to use (defaults to the module logger)
        """
        if config.max_parallelism < 1:
            raise ConfigurationError(f"max_parallelism must be at least 1, got {config.max_parallelism}")

        self.config = config
        self.client = config.client
        self.resolver = config.resolver
        self.max_parallelism = config.max_parallelism
        self.logger = logger or logging.getLogger("sysupdate_dl.downloader")

    def _make_reporter(self, total: int, label: str) -> ProgressReporter:
        return ProgressReporter(
            total,
            label=label,
            enabled=None if self.config.show_progress else False,
            verbose=self.config.verbose,
        )

    def _run_pass(self, items: Sequence[ContentGraphEntry], job: Callable[[ContentGraphEntry], None],
                  label: str) -> None:
        """
        Run job for every item with at most max_parallelism in flight.

        The first failure cancels the jobs that have not started and is re-raised.
        """
        if not items:
            return

        with self._make_reporter(len(items), label) as reporter:
            with ThreadPoolExecutor(max_workers=self.max_parallelism) as executor:
                future_to_item = {executor.submit(job, item): item for item in items}

                try:
                    for future in as_completed(future_to_item):
                        item = future_to_item[future]
                        try:
                            future.result()
                        except Exception as e:
                            self.logger.error(f"Failed to download {item.key}: {e}")
                            raise
                        reporter.increment()
                        self.logger.debug(f"Completed {item.key} ({reporter.done}/{len(items)})")
                except BaseException:
                    for pending in future_to_item:
                        pending.cancel()
                    raise

    # ========== Meta ==========

    def _download_meta(self, entry: MetaEntry, frontier: EntryAccumulator,
                       contents: EntryAccumulator) -> None:
        """Download, persist and decode one meta title (runs on a worker)."""
        blob = self.client.get_meta(entry.title_id, entry.version)
        if self.config.meta_handler is not None:
            self.config.meta_handler(blob.data, blob.title_id, blob.content_id, blob.version, blob.url)

        resolved = self.resolver.resolve(blob.data)
        require_homogeneous(resolved, f"title {entry.title_id} v{entry.version}")

        metas, content_entries = split_entries(resolved)
        frontier.extend(metas)
        contents.extend(content_entries)

    def process_meta(self, entries: Sequence[ContentGraphEntry]) -> List[ContentEntry]:
        """
        Download all meta titles reachable from entries.

        Args:
            entries: Meta entries to start from

        Returns:
            Every content entry discovered, deduplicated by content ID

        Raises:
            GraphInvariantViolation: If entries holds a content entry, or a
                decoded title mixes meta and content entries
        """
        contents, _ = self._walk_meta(entries)
        return contents

    def _walk_meta(self, entries: Sequence[ContentGraphEntry]) -> Tuple[List[ContentEntry], int]:
        """Frontier walk behind process_meta; also returns the number of titles fetched."""
        require_kind(entries, meta=True, context="meta batch")

        visited = set()
        contents = EntryAccumulator()
        frontier: List[MetaEntry] = EntryAccumulator(entries).items()
        pass_number = 0

        while frontier:
            pass_number += 1
            visited.update(entry.key for entry in frontier)
            next_frontier = EntryAccumulator()

            self.logger.debug(f"Meta pass {pass_number}: {len(frontier)} titles")
            self._run_pass(
                frontier,
                lambda entry: self._download_meta(entry, next_frontier, contents),
                f"Meta titles (pass {pass_number})",
            )

            frontier = [entry for entry in next_frontier.items() if entry.key not in visited]

        return contents.items(), len(visited)

    # ========== Content ==========

    def _download_content(self, entry: ContentEntry) -> None:
        """Download one content NCA and hand its stream to the handler (runs on a worker)."""
        content = self.client.get_content_blob(entry.content_id)
        try:
            self.config.content_handler(content.stream, content.content_id, content.url)
        finally:
            content.close()

    def process_content(self, entries: Sequence[ContentGraphEntry]) -> int:
        """
        Download all content entries.

        Args:
            entries: Content entries

        Returns:
            Number of contents downloaded (0 if there is no content handler)

        Raises:
            GraphInvariantViolation: If entries holds a meta entry
        """
        require_kind(entries, meta=False, context="content batch")

        # Don't download content if nothing is going to handle it
        if self.config.content_handler is None:
            self.logger.debug("No content handler, skipping content download")
            return 0

        self._run_pass(entries, self._download_content, "Contents")
        return len(entries)

    # ========== Full update ==========

    def download_update(self, sys_update: SysUpdateMeta, title_filter: Optional[Iterable[str]] = None,
                        only_meta: bool = False) -> DownloadSummary:
        """
        Download everything the system update meta container references.

        Args:
            sys_update: Root container from CdnClient.get_sys_update_meta()
            title_filter: Only follow these meta title IDs (all if None)
            only_meta: Stop after the meta titles, skip content

        Returns:
            DownloadSummary
        """
        if self.config.meta_handler is not None:
            self.config.meta_handler(sys_update.data, sys_update.title_id, sys_update.content_id,
                                     str(sys_update.version.value), sys_update.url)

        self.logger.info("Parsing system update entries...")
        entries = self.resolver.resolve(sys_update.data)
        require_homogeneous(entries, "system update meta")
        metas, root_contents = split_entries(entries)

        if title_filter is not None:
            allowed = {title_id.lower() for title_id in title_filter}
            skipped = [entry.title_id for entry in metas if entry.title_id.lower() not in allowed]
            metas = [entry for entry in metas if entry.title_id.lower() in allowed]
            if skipped:
                self.logger.debug(f"Skipping titles not in filter: {', '.join(skipped)}")

        self.logger.info(f"Downloading {len(metas)} meta titles...")
        contents = EntryAccumulator(root_contents)
        discovered, meta_titles = self._walk_meta(metas)
        contents.extend(discovered)

        summary = DownloadSummary(sys_update=sys_update, meta_titles=meta_titles, contents=contents.items())
        if only_meta:
            self.logger.info(f"Skipping {len(summary.contents)} contents (meta only)")
            return summary

        self.logger.info(f"Downloading {len(summary.contents)} contents...")
        summary.contents_downloaded = self.process_content(summary.contents)
        return summary

    def download_latest(self, title_filter: Optional[Iterable[str]] = None,
                        only_meta: bool = False) -> DownloadSummary:
        """Fetch the latest system update meta and download the whole update."""
        self.logger.info("Getting system update meta...")
        return self.download_update(self.client.get_sys_update_meta(), title_filter, only_meta)


def latest_version_report(client: CdnClient) -> str:
    """One-line description of the latest system update on the CDN."""
    version = client.get_version_index().latest.version
    return f"Latest version on CDN: {version} [{version.value}] buildnum={version.build_number}"
