"""Application context holding the registry, dispatch queue and runner."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from config.settings import Settings, load_settings, validate_settings
from engine.dispatch import DispatchQueue
from engine.jobs import Job, JobRegistry
from engine.paths import EnginePaths, build_engine_paths
from engine.runner import JobRunner

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    paths: EnginePaths
    registry: JobRegistry
    dispatch: DispatchQueue
    runner: JobRunner

    def submit(self, **fields: Any) -> Job:
        """Create a queued job and hand its runner to the dispatch queue.

        Must be called from inside the running event loop.
        """
        job = self.registry.create_job(**fields)
        self.dispatch.enqueue(job.id, self.runner.runner_for(job.id))
        return job

    def cancel(self, job_id: str, reason: str = "user") -> Optional[Job]:
        self.dispatch.remove_from_queue(job_id)
        return self.registry.cancel_job(job_id, reason=reason)


def build_context(
    settings: Optional[Settings] = None,
    paths: Optional[EnginePaths] = None,
    **runner_overrides: Any,
) -> AppContext:
    settings = settings or load_settings()
    errors = validate_settings(settings)
    if errors:
        raise ValueError("Invalid settings: " + "; ".join(errors))
    paths = paths or build_engine_paths()
    registry = JobRegistry(kill_grace_seconds=settings.kill_grace_seconds)
    return AppContext(
        settings=settings,
        paths=paths,
        registry=registry,
        dispatch=DispatchQueue(registry),
        runner=JobRunner(registry, paths=paths, settings=settings, **runner_overrides),
    )
