"""
Usage log loading.

Reads JSONL usage logs written by the coding assistant, normalizes each line
into a UsageEvent and merges several sources into one deduplicated,
time-ordered event sequence.

Loading never fails on bad data: malformed lines are counted and skipped,
unreadable sources are reported next to whatever was recovered.
"""

import json
import logging
import math
import os
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from ccmeter.core.token_counter import TokenCounts
from ccmeter.storage.models import UsageEvent
from ccmeter.utils.timezone import parse_timestamp

logger = logging.getLogger(__name__)

SourcePath = Union[str, Path]

_TOKEN_FIELDS = {
    "input_tokens": "input_tokens",
    "output_tokens": "output_tokens",
    "cache_creation_tokens": "cache_creation_input_tokens",
    "cache_read_tokens": "cache_read_input_tokens",
}


class MalformedRecordError(ValueError):
    """Raised when a log line cannot be turned into a usage event."""


class NoReadableSourcesError(RuntimeError):
    """Raised by LoadResult.raise_for_status when no source could be read."""


@dataclass(frozen=True)
class SourceFailure:
    """A source (or a file inside a source directory) that could not be read."""
    source: str
    reason: str


@dataclass
class SourceResult:
    """Everything recovered from a single source."""
    source: str
    readable: bool
    events: List[UsageEvent] = field(default_factory=list)
    malformed_count: int = 0
    ignored_count: int = 0
    failures: List[SourceFailure] = field(default_factory=list)


@dataclass(frozen=True)
class LoadResult:
    """Merged output of a load across all sources."""
    events: Tuple[UsageEvent, ...]
    sources_read: int
    malformed_count: int = 0
    ignored_count: int = 0
    duplicate_count: int = 0
    failures: Tuple[SourceFailure, ...] = ()

    @property
    def ok(self) -> bool:
        """True when at least one source was readable."""
        return self.sources_read > 0

    def raise_for_status(self) -> None:
        """Raise NoReadableSourcesError if nothing could be read."""
        if not self.ok:
            reasons = "; ".join(f"{f.source}: {f.reason}" for f in self.failures)
            raise NoReadableSourcesError(
                f"No readable usage sources{': ' + reasons if reasons else ''}"
            )


def parse_record(data: Any, source: str = "", project: str = "unknown",
                 fallback_session_id: str = "unknown") -> Optional[UsageEvent]:
    """Parse one decoded JSON log record into a UsageEvent.

    Args:
        data: Decoded JSON value of a single log line
        source: Path of the file the line came from
        project: Project name derived from the source path
        fallback_session_id: Session id to use when the record has none

    Returns:
        UsageEvent, or None for records that carry no token usage
        (user prompts, summaries and other bookkeeping lines)

    Raises:
        MalformedRecordError: If the record is not an object or has no valid
            timestamp, or if its usage fields are invalid
    """
    if not isinstance(data, dict):
        raise MalformedRecordError("record is not a JSON object")

    raw_timestamp = data.get("timestamp")
    if raw_timestamp is None:
        raise MalformedRecordError("missing timestamp")
    timestamp = parse_timestamp(raw_timestamp)
    if timestamp is None:
        raise MalformedRecordError(f"invalid timestamp: {raw_timestamp!r}")

    message = data.get("message")
    if not isinstance(message, dict):
        return None
    usage = message.get("usage")
    if not isinstance(usage, dict):
        return None

    tokens = TokenCounts(**{
        name: _token_value(usage, key) for name, key in _TOKEN_FIELDS.items()
    })

    cost = data.get("costUSD")
    if cost is not None:
        if (isinstance(cost, bool) or not isinstance(cost, (int, float))
                or not math.isfinite(cost) or cost < 0):
            raise MalformedRecordError(f"invalid costUSD: {cost!r}")
        cost = float(cost)

    model = message.get("model")
    return UsageEvent(
        timestamp=timestamp,
        session_id=_optional_str(data.get("sessionId")) or fallback_session_id,
        project=project,
        tokens=tokens,
        request_id=_optional_str(data.get("requestId")),
        message_id=_optional_str(message.get("id")),
        model=model if isinstance(model, str) and model else None,
        precomputed_cost_usd=cost,
        is_error_event=bool(data.get("isApiErrorMessage", False)),
        source=source,
    )


def _token_value(usage: Dict[str, Any], key: str) -> int:
    value = usage.get(key)
    if value is None:
        return 0
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise MalformedRecordError(f"invalid {key}: {value!r}")
    return value


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def find_log_files(path: SourcePath) -> List[Path]:
    """List the JSONL files a source refers to.

    A file path yields itself; a directory yields every *.jsonl beneath it in
    sorted order so iteration is deterministic.
    """
    source = Path(path)
    if source.is_dir():
        return sorted(p for p in source.rglob("*.jsonl") if p.is_file())
    return [source]


def default_log_roots() -> List[Path]:
    """Locate the assistant's usage log directories.

    Honors CLAUDE_CONFIG_DIR (comma separated) when set; otherwise returns the
    existing ones of ~/.config/claude/projects and ~/.claude/projects.
    """
    env_dirs = os.environ.get("CLAUDE_CONFIG_DIR", "").strip()
    if env_dirs:
        candidates = [Path(d.strip()).expanduser() / "projects"
                      for d in env_dirs.split(",") if d.strip()]
    else:
        home = Path.home()
        candidates = [home / ".config" / "claude" / "projects",
                      home / ".claude" / "projects"]
    return [c for c in candidates if c.is_dir()]


def load_source(path: SourcePath) -> SourceResult:
    """Read every usage event from one source (file or directory).

    Args:
        path: JSONL file or directory containing JSONL files

    Returns:
        SourceResult; readable is False if the source itself cannot be read
    """
    source = Path(path)
    result = SourceResult(source=str(source), readable=False)

    if not source.exists():
        result.failures.append(SourceFailure(str(source), "not found"))
        logger.warning("Usage source not found, skipping: %s", source)
        return result

    try:
        files = find_log_files(source)
    except OSError as e:
        result.failures.append(SourceFailure(str(source), str(e)))
        logger.warning("Could not list usage source %s: %s", source, e)
        return result
    result.readable = source.is_dir()

    for file_path in files:
        try:
            _read_file(file_path, result)
        except (OSError, UnicodeDecodeError) as e:
            result.failures.append(SourceFailure(str(file_path), str(e)))
            logger.warning("Could not read usage file %s: %s", file_path, e)
            continue
        result.readable = True

    return result


def _read_file(file_path: Path, result: SourceResult) -> None:
    project = file_path.parent.name or "unknown"
    with open(file_path, "r", encoding="utf-8") as f:
        for line_num, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                event = parse_record(
                    json.loads(line),
                    source=str(file_path),
                    project=project,
                    fallback_session_id=file_path.stem,
                )
            except (json.JSONDecodeError, MalformedRecordError) as e:
                result.malformed_count += 1
                logger.debug("Skipping malformed record at %s:%d: %s", file_path, line_num, e)
                continue
            if event is None:
                result.ignored_count += 1
                continue
            result.events.append(event)


def load_events(
    sources: Sequence[SourcePath],
    max_workers: Optional[int] = None,
    timeout: Optional[float] = None,
) -> LoadResult:
    """Load, merge and deduplicate usage events from several sources.

    Sources are read in parallel, one task per source. Results are merged in
    the order the sources were given, duplicates are dropped keeping the first
    occurrence, and the result is stably sorted by timestamp.

    Args:
        sources: Files or directories to read
        max_workers: Thread pool size (defaults to one per source, at most 8)
        timeout: Seconds to wait for all reads; unfinished sources are
            reported as failures

    Returns:
        LoadResult with the merged events and per-source diagnostics
    """
    if not sources:
        return LoadResult(events=(), sources_read=0)

    workers = max_workers or min(len(sources), 8)
    executor = ThreadPoolExecutor(max_workers=workers)
    try:
        futures = [executor.submit(load_source, source) for source in sources]
        wait(futures, timeout=timeout)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    results: List[SourceResult] = []
    for source, future in zip(sources, futures):
        if not future.done():
            logger.warning("Timed out reading usage source: %s", source)
            results.append(SourceResult(
                source=str(source),
                readable=False,
                failures=[SourceFailure(str(source), "timed out")],
            ))
            continue
        if future.cancelled():
            results.append(SourceResult(
                source=str(source),
                readable=False,
                failures=[SourceFailure(str(source), "cancelled")],
            ))
            continue
        error = future.exception()
        if error is not None:
            logger.warning("Failed to load usage source %s: %s", source, error)
            results.append(SourceResult(
                source=str(source),
                readable=False,
                failures=[SourceFailure(str(source), str(error))],
            ))
            continue
        results.append(future.result())

    return merge_results(results)


def merge_results(results: Iterable[SourceResult]) -> LoadResult:
    """Merge per-source results into one deduplicated, time-ordered load."""
    seen: Set[Tuple[str, ...]] = set()
    merged: List[UsageEvent] = []
    duplicates = 0
    malformed = 0
    ignored = 0
    readable = 0
    failures: List[SourceFailure] = []

    for result in results:
        malformed += result.malformed_count
        ignored += result.ignored_count
        failures.extend(result.failures)
        if result.readable:
            readable += 1
        for event in result.events:
            key = event.dedup_key
            if key in seen:
                duplicates += 1
                continue
            seen.add(key)
            merged.append(event)

    # sorted() is stable: equal timestamps keep source-iteration order
    merged = sorted(merged, key=lambda e: e.timestamp)

    if malformed:
        logger.info("Skipped %d malformed usage records", malformed)

    return LoadResult(
        events=tuple(merged),
        sources_read=readable,
        malformed_count=malformed,
        ignored_count=ignored,
        duplicate_count=duplicates,
        failures=tuple(failures),
    )
