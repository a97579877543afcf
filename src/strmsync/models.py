"""Value types shared by the engine, scheduler and stores."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

STRM_EXTENSION = ".strm"
DEFAULT_CONCURRENCY = 10


class RefreshMode(str, Enum):
    """How a run treats stubs already present in the target tree."""

    INCREMENTAL = "incremental"
    FULL = "full"


class ContentMode(str, Enum):
    """What a stub file contains."""

    PATH = "path"
    URL = "url"

    @classmethod
    def parse(cls, value: str) -> ContentMode:
        """Accept both the short names and the older alist_path/http_url spellings."""
        aliases = {"alist_path": cls.PATH, "http_url": cls.URL}
        if value in aliases:
            return aliases[value]
        return cls(value)


@dataclass(frozen=True)
class MappingSpec:
    """One source-tree to target-tree rule and its run policy."""

    name: str
    source: str
    target: str
    extensions: tuple[str, ...] = ()
    concurrent: int = DEFAULT_CONCURRENCY
    mode: RefreshMode = RefreshMode.INCREMENTAL
    content_mode: ContentMode = ContentMode.PATH
    cron: str = ""
    enabled: bool = True
    id: int = 0

    @property
    def effective_concurrency(self) -> int:
        return self.concurrent if self.concurrent > 0 else DEFAULT_CONCURRENCY


@dataclass(frozen=True)
class RemoteItem:
    """A leaf entry returned by the remote lister."""

    path: str
    is_dir: bool = False
    size: int = 0
    modified: datetime | None = None


@dataclass(frozen=True)
class ItemError:
    """A single item that could not be materialized."""

    source_path: str
    message: str

    def __str__(self) -> str:
        return f"{self.source_path}: {self.message}"


@dataclass(frozen=True)
class RunResult:
    """Aggregate outcome of one generation run."""

    created: int = 0
    skipped: int = 0
    deleted: int = 0
    errors: tuple[ItemError, ...] = field(default_factory=tuple)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def error_summary(self) -> str:
        """Join item errors into a single line for task records."""
        return "; ".join(str(e) for e in self.errors)
