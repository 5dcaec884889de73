"""End-to-end execution of one job: retrieve, convert, report."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import anyio

from config.settings import Settings
from download.events import FileDone, PercentUpdate, SkipHint, Summary
from download.ytdlp import (
    DownloadFlags,
    RetrievalOptions,
    Selection,
    download_media,
    ids_to_watch_urls,
    parse_playlist_index_from_path,
)
from engine.download_queue import DownloadConvertQueue, ItemResult
from engine.errors import CancelledError, ItemSkippedError, ToolError
from engine.jobs import (
    JOB_STATUS_CANCELED,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_CONVERTING,
    JOB_STATUS_DOWNLOADING,
    JOB_STATUS_ERROR,
    JOB_STATUS_PROCESSING,
    Job,
    JobRegistry,
    PlaylistProgress,
)
from engine.limiter import Limiter
from engine.logging_utils import log_event
from engine.outputs import (
    ConvertResult,
    cleanup_temp_files,
    download_url,
    item_output_id,
    make_zip,
    reuse_result,
    stream_output_id,
)
from engine.paths import EnginePaths, resolve_local_input
from engine.progress import ProgressTracker, sequential_share
from input.source_router import SourceKind, detect_source
from media.ffprobe import probe_audio_streams
from media.transcode import ConvertOptions, convert_media
from metadata.merge import EntrySources, build_entry_sources, merge_missing, resolve_item_metadata
from metadata.providers.artwork import fetch_cover_to_file
from metadata.providers.ytdlp import fetch_source_metadata, probe_item_metadata

logger = logging.getLogger(__name__)

_SPOTIFY_KINDS = {SourceKind.SPOTIFY_TRACK, SourceKind.SPOTIFY_ALBUM, SourceKind.SPOTIFY_PLAYLIST}
_COVER_FORMATS = {"mp3", "flac"}


@dataclass
class _RunState:
    """Per-invocation counters used to reconcile skip/error totals."""

    skips: int = 0
    errors: int = 0


class JobRunner:
    """Drive a job from ``queued`` to a terminal status.

    Collaborators are injectable so the orchestration can run against fake
    retrieval and conversion functions.
    """

    def __init__(
        self,
        registry: JobRegistry,
        *,
        paths: EnginePaths,
        settings: Optional[Settings] = None,
        download_fn: Callable[..., Awaitable[Any]] = download_media,
        convert_fn: Callable[..., Awaitable[ConvertResult]] = convert_media,
        fetch_metadata_fn: Optional[Callable[..., Awaitable[Optional[dict]]]] = fetch_source_metadata,
        probe_item_fn: Optional[Callable[..., Awaitable[Optional[dict]]]] = probe_item_metadata,
        cover_fn: Optional[Callable[..., Optional[str]]] = fetch_cover_to_file,
        probe_streams_fn: Optional[Callable[[str], list]] = probe_audio_streams,
    ) -> None:
        self.registry = registry
        self.paths = paths
        self.settings = settings or Settings()
        self._download_fn = download_fn
        self._convert_fn = convert_fn
        self._fetch_metadata_fn = fetch_metadata_fn
        self._probe_item_fn = probe_item_fn
        self._cover_fn = cover_fn
        self._probe_streams_fn = probe_streams_fn

    def runner_for(self, job_id: str) -> Callable[[], Awaitable[None]]:
        async def _run() -> None:
            await self.run(job_id)

        return _run

    async def run(self, job_id: str) -> Optional[Job]:
        job = self.registry.get_job(job_id)
        if job is None or job.canceled or job.is_terminal:
            return job
        # Children left over from an earlier attempt of this job.
        self.registry.kill_job_processes(job_id)
        job.set_status(JOB_STATUS_PROCESSING)
        tracker = ProgressTracker(job)
        log_event(logging.INFO, "job_started", job_id=job_id, source=job.source, batch=job.is_batch)
        try:
            source = detect_source(job.source)
            if job.is_batch:
                await self._run_batch(job, source, tracker)
            else:
                await self._run_single(job, source, tracker)
            job.cancel_token.raise_if_cancelled()
            tracker.finish()
            job.set_status(JOB_STATUS_COMPLETED)
            log_event(
                logging.INFO,
                "job_completed",
                job_id=job_id,
                skipped=job.skipped_count,
                errors=job.errors_count,
            )
        except CancelledError:
            self._mark_canceled(job)
        except Exception as exc:
            if job.canceled:
                self._mark_canceled(job)
            else:
                logger.exception("Job failed job_id=%s", job_id)
                job.error = str(exc) or exc.__class__.__name__
                job.set_status(JOB_STATUS_ERROR)
                log_event(logging.ERROR, "job_failed", job_id=job_id, error=job.error)
        finally:
            self.registry.kill_job_processes(job_id)
            cleanup_temp_files(job_id, self.paths.temp_dir)
        return job

    def _mark_canceled(self, job: Job) -> None:
        job.set_status(JOB_STATUS_CANCELED)
        job.error = None
        if job.canceled_by is None:
            job.canceled_by = job.cancel_token.reason or "process"
        log_event(logging.INFO, "job_canceled", job_id=job.id, canceled_by=job.canceled_by)

    def _retrieval_options(self, job: Job) -> RetrievalOptions:
        return RetrievalOptions(
            command=(self.settings.ytdlp_bin,),
            socket_timeout=self.settings.socket_timeout,
            playlist_end=self.settings.playlist_end,
            extra_args=tuple(self.settings.ytdlp_extra_args),
            poll_interval=self.settings.cancel_poll_seconds,
            kill_grace_seconds=self.settings.kill_grace_seconds,
            on_spawn=lambda proc: self.registry.register_job_process(job.id, proc),
            on_exit=lambda proc: self.registry.unregister_job_process(job.id, proc),
        )

    def _convert_options(self, job: Job, stream_index: Optional[int] = None) -> ConvertOptions:
        return ConvertOptions(
            ffmpeg_bin=self.settings.ffmpeg_bin,
            cancel_token=job.cancel_token,
            stream_index=stream_index,
            poll_interval=self.settings.cancel_poll_seconds,
            kill_grace_seconds=self.settings.kill_grace_seconds,
            on_spawn=lambda proc: self.registry.register_job_process(job.id, proc),
            on_exit=lambda proc: self.registry.unregister_job_process(job.id, proc),
        )

    def _event_handler(
        self,
        job: Job,
        tracker: ProgressTracker,
        state: _RunState,
        *,
        track_percent: bool,
        on_file_done: Optional[Callable[[FileDone], None]] = None,
        reconcile_skips: bool = False,
    ) -> Callable[[Any], None]:
        def handle(event) -> None:
            if not tracker.writable:
                return
            if isinstance(event, SkipHint):
                state.skips += 1
                job.skipped_count += 1
            elif isinstance(event, PercentUpdate):
                if track_percent and event.overall is not None:
                    tracker.set_download(event.overall)
            elif isinstance(event, FileDone):
                if event.total:
                    tracker.set_totals(event.total)
                if on_file_done is not None:
                    on_file_done(event)
            elif isinstance(event, Summary):
                state.errors += event.errors
                job.errors_count += event.errors
                if reconcile_skips and event.skipped > state.skips:
                    job.skipped_count += event.skipped - state.skips
                    state.skips = event.skipped

        return handle

    async def _lookup(self, url: str, is_playlist: bool) -> Optional[dict]:
        if self._fetch_metadata_fn is None:
            return None
        try:
            return await self._fetch_metadata_fn(url, is_playlist)
        except Exception:
            logger.warning("Metadata lookup failed url=%s", url, exc_info=True)
            return None

    async def _cover_for(self, job: Job, metadata: dict, target_base: str) -> Optional[str]:
        if self._cover_fn is None or job.request.get("is_video"):
            return None
        if str(job.format).lower() not in _COVER_FORMATS:
            return None
        sidecar = target_base + ".jpg"
        if os.path.isfile(sidecar):
            return sidecar
        thumbnail = metadata.get("thumbnail")
        if not thumbnail:
            return None
        try:
            return await anyio.to_thread.run_sync(self._cover_fn, thumbnail, target_base + ".cover.jpg")
        except Exception:
            logger.debug("Cover download failed for %s", thumbnail, exc_info=True)
            return None

    # single item and multi-stream jobs

    async def _run_single(self, job: Job, source, tracker: ProgressTracker) -> None:
        is_video = bool(job.request.get("is_video"))
        tracker.set_totals(1)
        if source.kind is SourceKind.LOCAL_FILE:
            input_path = resolve_local_input(source.value, self.paths.local_inputs_dir)
            tracker.item_downloaded()
        else:
            target = source.value
            if source.kind in _SPOTIFY_KINDS:
                ids = job.request.get("selected_ids") or []
                if not ids:
                    raise ValueError("Spotify sources require selected_ids resolved to retrievable ids")
                target = ids_to_watch_urls(ids[:1])[0]
            meta = await self._lookup(target, False)
            if meta:
                job.metadata = merge_missing(job.metadata, {k: v for k, v in meta.items() if k != "entries"})
            job.cancel_token.raise_if_cancelled()
            job.set_status(JOB_STATUS_DOWNLOADING)
            state = _RunState()
            input_path = await self._download_fn(
                target,
                job.id,
                is_batch=False,
                selection=Selection(),
                flags=DownloadFlags(video=is_video, max_height=int(job.request.get("max_height") or 1080)),
                temp_dir=self.paths.temp_dir,
                on_event=self._event_handler(job, tracker, state, track_percent=True),
                options=self._retrieval_options(job),
                cancel_token=job.cancel_token,
            )
            if isinstance(input_path, (list, tuple)):
                input_path = input_path[0]
            tracker.item_downloaded()

        job.cancel_token.raise_if_cancelled()
        streams = await self._selected_streams(job, input_path)
        if len(streams) > 1:
            await self._convert_streams(job, input_path, streams, tracker)
            return

        job.set_status(JOB_STATUS_CONVERTING)
        output = reuse_result(job.id, job.format, self.paths.output_dir)
        if output is None:
            cover = await self._cover_for(job, job.metadata, os.path.splitext(input_path)[0])
            output = await self._convert_fn(
                input_path,
                job.format,
                job.bitrate,
                job.id,
                tracker.set_convert,
                dict(job.metadata),
                cover,
                is_video,
                self.paths.output_dir,
                self.paths.temp_dir,
                self._convert_options(job, streams[0] if streams else None),
            )
        job.cancel_token.raise_if_cancelled()
        tracker.item_converted(job.metadata.get("title"))
        job.outputs = [output.output_path]
        job.result_path = download_url(output.output_path)

    async def _selected_streams(self, job: Job, input_path: str) -> list[int]:
        selected = job.request.get("selected_streams")
        if selected == "all":
            if self._probe_streams_fn is None:
                return []
            try:
                streams = await anyio.to_thread.run_sync(self._probe_streams_fn, input_path)
                return [int(stream["index"]) for stream in streams]
            except (RuntimeError, ValueError):
                logger.warning("Audio stream probe failed for %s", input_path, exc_info=True)
                return []
        if isinstance(selected, (list, tuple)):
            return [int(value) for value in selected]
        return []

    async def _convert_streams(self, job: Job, input_path: str, streams: list[int], tracker: ProgressTracker) -> None:
        total = len(streams)
        job.counters.set_total("cv_total", total)
        job.set_status(JOB_STATUS_CONVERTING)
        outputs = []
        for position, stream_index in enumerate(streams):
            job.cancel_token.raise_if_cancelled()
            item_id = stream_output_id(job.id, stream_index)
            output = reuse_result(item_id, job.format, self.paths.output_dir)
            if output is None:
                output = await self._convert_fn(
                    input_path,
                    job.format,
                    job.bitrate,
                    item_id,
                    lambda p, position=position: tracker.set_convert(sequential_share(position, total, p)),
                    dict(job.metadata),
                    None,
                    False,
                    self.paths.output_dir,
                    self.paths.temp_dir,
                    self._convert_options(job, stream_index),
                )
            outputs.append(output)
            tracker.item_converted(f"stream {stream_index}")
        job.cancel_token.raise_if_cancelled()
        job.outputs = [output.output_path for output in outputs]
        job.result_path = [download_url(output.output_path) for output in outputs]

    # batch jobs

    async def _run_batch(self, job: Job, source, tracker: ProgressTracker) -> None:
        request = job.request
        selected_ids = tuple(str(value) for value in request.get("selected_ids") or ())
        playlist_items = tuple(int(value) for value in request.get("playlist_items") or ())
        frozen_entries = request.get("frozen_entries") or []
        if source.kind in _SPOTIFY_KINDS and not selected_ids:
            raise ValueError("Spotify batches require selected_ids")

        meta = None
        if source.is_remote and source.kind not in _SPOTIFY_KINDS and not (selected_ids and frozen_entries):
            meta = await self._lookup(source.value, True)
        meta = meta or {}
        job.cancel_token.raise_if_cancelled()

        total = len(selected_ids) or len(playlist_items) or int(meta.get("count") or 0)
        job.playlist = PlaylistProgress(total=total)
        tracker.set_totals(total)
        album = request.get("frozen_title") or meta.get("title")
        if album:
            job.metadata.setdefault("title", album)
        sources = build_entry_sources(frozen_entries, meta.get("entries"), album=album)
        job.set_status(JOB_STATUS_DOWNLOADING)

        batch = _Batch(self, job, tracker, sources, selected_ids)
        try:
            if selected_ids:
                await batch.run_items(selected_ids)
            else:
                await batch.run_playlist(
                    source.value,
                    Selection(playlist_items=playlist_items),
                    DownloadFlags(
                        automix=source.kind is SourceKind.YOUTUBE_AUTOMIX,
                        video=bool(request.get("is_video")),
                        max_height=int(request.get("max_height") or 1080),
                    ),
                )
        finally:
            await batch.close()
        job.cancel_token.raise_if_cancelled()
        await self._finalize_batch(job, batch.queue.get_results())

    async def _finalize_batch(self, job: Job, results: list[ItemResult]) -> None:
        converted = [result for result in results if result.output is not None]
        job.metadata["items"] = [
            {
                "index": result.index,
                "title": (result.item or {}).get("title") if isinstance(result.item, dict) else None,
                "output": result.output.download_url if result.output else None,
                "reused": bool(result.output and result.output.reused),
                "skipped": result.skipped,
                "error": result.error,
            }
            for result in results
        ]
        if not converted:
            raise ToolError("No items could be converted")
        job.cancel_token.raise_if_cancelled()
        job.outputs = [result.output.output_path for result in converted]
        job.result_path = [download_url(path) for path in job.outputs]
        if len(converted) > 1 and not job.request.get("client_batch"):
            zip_path = await anyio.to_thread.run_sync(make_zip, job.id, job.outputs, self.paths.output_dir)
            job.cancel_token.raise_if_cancelled()
            if zip_path:
                job.zip_path = download_url(zip_path)


class _Batch:
    """Wiring of one batch run: limiters, the download/convert queue and convert tasks."""

    def __init__(self, runner: JobRunner, job: Job, tracker: ProgressTracker, sources: EntrySources, selected_ids) -> None:
        settings = runner.settings
        self.runner = runner
        self.job = job
        self.tracker = tracker
        self.sources = sources
        self.selected_ids = selected_ids
        self.convert_limiter = Limiter(settings.convert_concurrency)
        self.enrich_limiter = Limiter(settings.enrich_concurrency)
        self.convert_tasks: list[asyncio.Task] = []
        self.item_states: dict[int, _RunState] = {}
        self.reused: dict[int, ConvertResult] = {}
        self.queue: Optional[DownloadConvertQueue] = None

    def _make_queue(self, download_fn) -> DownloadConvertQueue:
        self.queue = DownloadConvertQueue(
            download_fn,
            limiter=Limiter(self.runner.settings.download_concurrency),
            cancel_token=self.job.cancel_token,
            on_item_done=self._on_item_done,
            skip_errors=(ItemSkippedError,),
        )
        return self.queue

    async def run_items(self, selected_ids) -> None:
        queue = self._make_queue(self._download_item)
        for position, item_id in enumerate(selected_ids, start=1):
            queue.enqueue({"id": item_id}, position)
        queue.end()
        await queue.wait_for_idle()
        await self._drain_converts()

    async def run_playlist(self, url: str, selection: Selection, flags: DownloadFlags) -> None:
        runner = self.runner
        queue = self._make_queue(self._passthrough)
        seen: set[str] = set()

        def _enqueue_path(path: str) -> None:
            key = os.path.normpath(path)
            if key in seen or queue.is_ended or self.job.canceled:
                return
            seen.add(key)
            index = parse_playlist_index_from_path(path)
            if index is None or queue.has_index(index):
                index = queue.next_free_index()
            self.tracker.item_downloaded()
            queue.enqueue({"path": path}, index)

        def _on_file_done(event: FileDone) -> None:
            _enqueue_path(event.path)

        state = _RunState()
        files = await runner._download_fn(
            url,
            self.job.id,
            is_batch=True,
            selection=selection,
            flags=flags,
            temp_dir=runner.paths.temp_dir,
            on_event=runner._event_handler(
                self.job,
                self.tracker,
                state,
                track_percent=True,
                on_file_done=_on_file_done,
                reconcile_skips=True,
            ),
            options=runner._retrieval_options(self.job),
            cancel_token=self.job.cancel_token,
        )
        if isinstance(files, str):
            files = [files]
        # Files from an earlier attempt, or ones yt-dlp never announced.
        for path in files or []:
            _enqueue_path(path)
        queue.end()
        await queue.wait_for_idle()
        await self._drain_converts()

    async def _passthrough(self, item: dict, index: int) -> str:
        return item["path"]

    async def _download_item(self, item: dict, index: int) -> str:
        runner = self.runner
        job = self.job
        existing = reuse_result(item_output_id(job.id, index - 1), job.format, runner.paths.output_dir)
        if existing is not None:
            self.reused[index] = existing
            self.tracker.item_downloaded()
            return existing.output_path
        state = self.item_states.setdefault(index, _RunState())
        path = await runner._download_fn(
            item["id"],
            item_output_id(job.id, index - 1),
            is_batch=False,
            selection=Selection(),
            flags=DownloadFlags(video=bool(job.request.get("is_video"))),
            temp_dir=runner.paths.temp_dir,
            on_event=runner._event_handler(job, self.tracker, state, track_percent=False),
            options=runner._retrieval_options(job),
            cancel_token=job.cancel_token,
        )
        if isinstance(path, (list, tuple)):
            path = path[0]
        self.tracker.item_downloaded()
        return path

    def _on_item_done(self, result: ItemResult, index: int) -> None:
        job = self.job
        state = self.item_states.get(index) or _RunState()
        if result.skipped:
            if state.skips == 0 and self.tracker.writable:
                job.skipped_count += 1
            return
        if result.error is not None:
            if state.errors == 0 and self.tracker.writable:
                job.errors_count += 1
            return
        task = asyncio.get_running_loop().create_task(self.convert_limiter.run(self._convert_item, result))
        self.convert_tasks.append(task)

    async def _convert_item(self, result: ItemResult) -> None:
        runner = self.runner
        job = self.job
        if job.canceled:
            result.canceled = True
            return
        index = result.index
        metadata = resolve_item_metadata(
            index,
            result.path,
            self.sources,
            selected_ids=self.selected_ids,
            base={"album": self.sources.album} if self.sources.album else None,
        )
        if isinstance(result.item, dict):
            result.item.update({k: metadata[k] for k in ("title", "artist") if k in metadata})
        if self.tracker.writable:
            job.playlist.current = metadata.get("title")

        output = self.reused.get(index) or reuse_result(
            item_output_id(job.id, index - 1), job.format, runner.paths.output_dir
        )
        try:
            if output is None:
                metadata = await self._enrich(metadata)
                job.set_status(JOB_STATUS_CONVERTING)
                cover = await runner._cover_for(job, metadata, os.path.splitext(result.path)[0])
                output = await runner._convert_fn(
                    result.path,
                    job.format,
                    job.bitrate,
                    item_output_id(job.id, index - 1),
                    None,
                    metadata,
                    cover,
                    bool(job.request.get("is_video")),
                    runner.paths.output_dir,
                    runner.paths.temp_dir,
                    runner._convert_options(job),
                )
        except CancelledError:
            result.canceled = True
            return
        except Exception as exc:
            logger.warning("Item convert failed job_id=%s index=%s error=%s", job.id, index, exc)
            result.error = str(exc) or exc.__class__.__name__
            if self.tracker.writable:
                job.errors_count += 1
            return
        result.output = output
        self.tracker.item_converted(metadata.get("title"))

    async def _enrich(self, metadata: dict) -> dict:
        runner = self.runner
        if not runner.settings.enrich_metadata or runner._probe_item_fn is None:
            return metadata
        target = metadata.get("webpage_url") or metadata.get("id")
        if not target:
            return metadata
        try:
            extra = await self.enrich_limiter.run(runner._probe_item_fn, target)
        except Exception:
            logger.debug("Item enrichment failed for %s", target, exc_info=True)
            return metadata
        return merge_missing(metadata, extra)

    async def _drain_converts(self) -> None:
        if self.convert_tasks:
            await asyncio.gather(*self.convert_tasks, return_exceptions=True)

    async def close(self) -> None:
        pending = [task for task in self.convert_tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self.queue is not None:
            await self.queue.shutdown()
