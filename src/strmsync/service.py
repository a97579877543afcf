"""Run orchestration: task records around generation runs."""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone

from strmsync.errors import GenerationError, MappingNotFoundError, RunCancelled
from strmsync.generator import Generator, ItemCallback
from strmsync.models import MappingSpec, RunResult
from strmsync.pool import CancelToken
from strmsync.store import MappingStore, TaskRecorder

logger = logging.getLogger(__name__)


class SyncService:
    """Runs mappings and records each run's outcome.

    One instance is created per process; ``started_at`` records when.
    """

    def __init__(
        self,
        generator: Generator,
        mappings: MappingStore,
        recorder: TaskRecorder,
    ) -> None:
        self.generator = generator
        self.mappings = mappings
        self.recorder = recorder
        self.started_at = datetime.now(timezone.utc)
        # Cancelled once, when the process shuts down.
        self.shutdown_token = CancelToken()

    def run_mapping(
        self,
        token: CancelToken,
        spec: MappingSpec,
        on_item: ItemCallback | None = None,
    ) -> RunResult:
        """Run one mapping and record the outcome.

        Fatal errors and cancellation are recorded and then re-raised.
        """
        task_id = str(uuid.uuid4())
        self.recorder.start(task_id, spec.name, spec.mode.value)
        logger.info("Task %s started for mapping %s", task_id, spec.name)

        try:
            result = self.generator.generate(token, spec, run_id=task_id, on_item=on_item)
        except RunCancelled as e:
            self.recorder.cancel(task_id, e.partial)
            logger.warning("Task %s cancelled for mapping %s", task_id, spec.name)
            raise
        except GenerationError as e:
            self.recorder.fail(task_id, str(e))
            raise
        except BaseException as e:
            self.recorder.fail(task_id, str(e) or type(e).__name__)
            raise

        self.recorder.complete(task_id, result)
        logger.info(
            "Task %s completed: created=%d, deleted=%d, skipped=%d, errors=%d",
            task_id, result.created, result.deleted, result.skipped, len(result.errors),
        )
        return result

    def run_by_name(self, token: CancelToken, name: str) -> RunResult:
        spec = self.mappings.get_by_name(name)
        if spec is None:
            raise MappingNotFoundError(name)
        return self.run_mapping(token, spec)

    def run_all(self, token: CancelToken) -> None:
        """Run every enabled mapping in parallel.

        Each mapping gets its own thread and its own worker pool. A failing
        mapping is logged and does not affect the others.
        """
        mappings = self.mappings.list_enabled()
        if not mappings:
            logger.info("No enabled mappings to run")
            return

        threads = [
            threading.Thread(
                target=self._run_logged,
                args=(token, spec),
                name=f"run-{spec.name}",
            )
            for spec in mappings
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

    def _run_logged(self, token: CancelToken, spec: MappingSpec) -> None:
        try:
            self.run_mapping(token, spec)
        except RunCancelled:
            logger.info("Mapping %s cancelled", spec.name)
        except Exception:
            logger.exception("Failed to run mapping %s", spec.name)

    def run_scheduled(self, name: str) -> None:
        """Entry point for schedule fires: lookup by name, shutdown token."""
        try:
            self.run_by_name(self.shutdown_token, name)
        except RunCancelled:
            logger.info("Scheduled run of %s cancelled by shutdown", name)
