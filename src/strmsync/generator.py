"""Generation engine: list a remote tree and write one .strm stub per item."""

from __future__ import annotations

import logging
import posixpath
import shutil
import tempfile
import threading
from pathlib import Path, PurePosixPath
from typing import Callable, Protocol, Sequence

from strmsync.dedup import deduplicate
from strmsync.errors import GenerationError, RunCancelled
from strmsync.models import (
    STRM_EXTENSION,
    ContentMode,
    ItemError,
    MappingSpec,
    RefreshMode,
    RemoteItem,
    RunResult,
)
from strmsync.pool import CancelToken, run_bounded

logger = logging.getLogger(__name__)

ItemCallback = Callable[[RemoteItem, str], None]


class Lister(Protocol):
    def list_recursive(self, root: str, extensions: Sequence[str]) -> list[RemoteItem]: ...


class Resolver(Protocol):
    def resolve(self, path: str) -> str: ...


def stub_path_for(remote_path: str, source_root: str, target_root: Path) -> Path:
    """Map a remote item path to its stub path under ``target_root``.

    Raises ValueError if the item does not live under ``source_root``.
    """
    root = posixpath.normpath(source_root) if source_root else "/"
    path = posixpath.normpath(remote_path)

    if root == "/":
        relative = path.lstrip("/")
    elif path.startswith(root + "/"):
        relative = path[len(root) + 1:]
    else:
        raise ValueError(f"{remote_path} is outside source root {source_root}")

    if not relative or ".." in PurePosixPath(relative).parts:
        raise ValueError(f"{remote_path} does not name an item under {source_root}")

    return (target_root / PurePosixPath(relative)).with_suffix(STRM_EXTENSION)


def write_stub(content: str, stub_path: Path) -> None:
    """Create parent directories and write the stub atomically."""
    stub_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path_str = tempfile.mkstemp(dir=stub_path.parent, suffix=".tmp")
    tmp_path = Path(tmp_path_str)
    try:
        with open(fd, "w", encoding="utf-8") as f:
            f.write(content)
        tmp_path.replace(stub_path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def clean_directory(directory: Path) -> int:
    """Remove every entry directly under ``directory``. Returns the count removed."""
    removed = 0
    for entry in directory.iterdir():
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()
        removed += 1
    return removed


class _Tally:
    """Counters shared by every worker of one run."""

    def __init__(self, deleted: int) -> None:
        self._lock = threading.Lock()
        self.created = 0
        self.skipped = 0
        self.deleted = deleted
        self.errors: list[ItemError] = []

    def add_created(self) -> None:
        with self._lock:
            self.created += 1

    def add_skipped(self) -> None:
        with self._lock:
            self.skipped += 1

    def add_error(self, source_path: str, message: str) -> None:
        with self._lock:
            self.errors.append(ItemError(source_path=source_path, message=message))

    def snapshot(self) -> RunResult:
        with self._lock:
            return RunResult(
                created=self.created,
                skipped=self.skipped,
                deleted=self.deleted,
                errors=tuple(self.errors),
            )


class Generator:
    """Materializes one mapping's remote tree as stub files."""

    def __init__(self, lister: Lister, resolver: Resolver) -> None:
        self.lister = lister
        self.resolver = resolver

    def generate(
        self,
        token: CancelToken,
        spec: MappingSpec,
        *,
        run_id: str = "",
        on_item: ItemCallback | None = None,
    ) -> RunResult:
        """Run one generation pass for ``spec``.

        Setup, clean and listing failures raise GenerationError. Item
        failures are collected in the returned RunResult. If ``token`` is
        cancelled, RunCancelled is raised carrying the partial result.
        """
        tag = run_id[:8] if run_id else spec.name
        target = Path(spec.target)
        token.raise_if_cancelled()

        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise GenerationError(spec.name, "prepare", f"cannot create {target}: {e}") from e

        deleted = 0
        if spec.mode is RefreshMode.FULL:
            logger.info("[%s] Cleaning target directory %s", tag, target)
            try:
                deleted = clean_directory(target)
            except OSError as e:
                raise GenerationError(spec.name, "clean", f"cannot clean {target}: {e}") from e

        logger.info("[%s] Scanning %s", tag, spec.source)
        try:
            items = self.lister.list_recursive(spec.source, list(spec.extensions))
        except Exception as e:
            raise GenerationError(spec.name, "list", str(e)) from e
        if token.cancelled:
            raise RunCancelled(RunResult(deleted=deleted))

        logger.info("[%s] Found %d items", tag, len(items))
        items = deduplicate(items)
        logger.info("[%s] %d items after deduplication", tag, len(items))

        tally = _Tally(deleted)

        def _notify(item: RemoteItem, outcome: str) -> None:
            if on_item is not None:
                on_item(item, outcome)

        def _materialize(item: RemoteItem) -> None:
            try:
                created = self._materialize_one(item, spec, target)
            except Exception as e:
                tally.add_error(item.path, str(e))
                logger.error("[%s] ERROR %s: %s", tag, item.path, e)
                _notify(item, "error")
                return
            if created:
                tally.add_created()
                logger.debug("[%s] CREATED %s", tag, item.path)
                _notify(item, "created")
            else:
                tally.add_skipped()
                logger.debug("[%s] SKIPPED %s (exists)", tag, item.path)
                _notify(item, "skipped")

        try:
            run_bounded(items, _materialize, limit=spec.effective_concurrency, token=token)
        except RunCancelled as e:
            partial = tally.snapshot()
            logger.warning(
                "[%s] Cancelled after %d created, %d skipped",
                tag, partial.created, partial.skipped,
            )
            raise RunCancelled(partial) from e

        result = tally.snapshot()
        logger.info(
            "[%s] Done: created=%d skipped=%d deleted=%d errors=%d",
            tag, result.created, result.skipped, result.deleted, len(result.errors),
        )
        return result

    def _materialize_one(self, item: RemoteItem, spec: MappingSpec, target: Path) -> bool:
        """Write the stub for one item. Returns False if it was skipped."""
        stub = stub_path_for(item.path, spec.source, target)

        if spec.mode is RefreshMode.INCREMENTAL and stub.exists():
            return False

        if spec.content_mode is ContentMode.PATH:
            content = item.path
        elif spec.content_mode is ContentMode.URL:
            try:
                content = self.resolver.resolve(item.path)
            except Exception as e:
                raise RuntimeError(f"cannot resolve URL: {e}") from e
        else:
            raise ValueError(f"unknown content mode: {spec.content_mode}")

        try:
            write_stub(content, stub)
        except OSError as e:
            raise RuntimeError(f"cannot write {stub}: {e}") from e
        return True
