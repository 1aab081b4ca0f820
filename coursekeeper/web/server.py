"""FastAPI application exposing course sync and playback progress to player front-ends."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Response, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from ..config import AppConfig
from ..errors import RepositoryError, ScanError
from ..models import Course
from ..services.library import CourseLibrary, SyncOutcome
from ..services.playback import ProgressPersister
from ..services.timestamps import TimestampStore


LOGGER = logging.getLogger("coursekeeper.web")


def _log_event(message: str, **context: Any) -> None:
    details = ", ".join(f"{key}={value}" for key, value in context.items() if value is not None)
    if details:
        LOGGER.info("%s (%s)", message, details)
    else:
        LOGGER.info("%s", message)


class _Payload(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)


class ScanPayload(_Payload):
    root: str
    probe_durations: Optional[bool] = None


class PositionPayload(_Payload):
    path: str = Field(min_length=1)
    seconds: int = Field(ge=0)


class SavePositionPayload(_Payload):
    root: str = Field(min_length=1)
    part_id: str = Field(min_length=1)
    seconds: int = Field(ge=0)


class WatchedPayload(_Payload):
    root: str = Field(min_length=1)
    part_id: str = Field(min_length=1)


class TimestampPayload(_Payload):
    root: str = Field(min_length=1)
    video: str = Field(min_length=1)
    seconds: int = Field(ge=0)
    description: str = Field(min_length=1)


def _serialize_course(course: Course) -> Dict[str, Any]:
    payload = course.to_dict()
    target = CourseLibrary.resume_target(course)
    payload["resume_target"] = target.id if target is not None else None
    return payload


def _serialize_outcome(outcome: SyncOutcome) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "action": outcome.action,
        "note": outcome.note,
        "course": _serialize_course(outcome.course),
    }
    if outcome.merge is not None:
        payload["merge"] = {
            **outcome.merge.summary(),
            "unmatched_existing": [part.path for part in outcome.merge.unmatched_existing],
            "unmatched_new": [part.path for part in outcome.merge.unmatched_new],
        }
    if outcome.backup_path is not None:
        payload["backup_path"] = str(outcome.backup_path)
    return payload


def create_app(
    library: CourseLibrary,
    persister: ProgressPersister,
    *,
    config: AppConfig,
    root_path: str | None = None,
    timestamps: Optional[TimestampStore] = None,
) -> FastAPI:
    """Return a configured FastAPI application."""

    bookmarks = timestamps or TimestampStore()

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        LOGGER.info("Flushing pending playback positions before shutdown")
        persister.close()

    app = FastAPI(
        title="Course Keeper",
        description="Scan local video courses and keep playback progress",
        root_path=root_path or "",
        lifespan=lifespan,
    )
    app.state.server = None
    app.state.config = config
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _clean_root(root: str) -> str:
        cleaned = root.strip()
        if not cleaned:
            raise HTTPException(status_code=400, detail="Course root is required")
        return cleaned

    def _require_course(root: str) -> Course:
        course = library.load(root)
        if course is None:
            raise HTTPException(status_code=404, detail="Course not found")
        return course

    @app.get("/api/courses")
    async def get_course(root: str = Query(..., min_length=1)) -> Dict[str, Any]:
        course = await asyncio.to_thread(_require_course, _clean_root(root))
        return {"course": _serialize_course(course)}

    @app.post("/api/courses/scan")
    async def scan_course(payload: ScanPayload) -> Dict[str, Any]:
        root = _clean_root(payload.root)

        _log_event("Scanning course", root=root)
        try:
            outcome = await asyncio.to_thread(
                library.sync, root, probe_durations=payload.probe_durations
            )
        except ScanError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        except RepositoryError as error:
            raise HTTPException(status_code=503, detail=str(error)) from error

        _log_event("Scanned course", root=root, action=outcome.action)
        return _serialize_outcome(outcome)

    @app.post("/api/progress/position", status_code=status.HTTP_202_ACCEPTED)
    async def notify_position(payload: PositionPayload) -> Dict[str, Any]:
        accepted = await asyncio.to_thread(
            persister.notify_position, payload.path, payload.seconds
        )
        return {"accepted": accepted}

    @app.post("/api/progress/save")
    async def save_position(payload: SavePositionPayload) -> Dict[str, Any]:
        try:
            saved = await asyncio.to_thread(
                persister.save_position_by_part_id,
                payload.root,
                payload.part_id,
                payload.seconds,
            )
        except RepositoryError as error:
            raise HTTPException(status_code=503, detail=str(error)) from error
        if not saved:
            raise HTTPException(status_code=404, detail="Course not found")
        course = await asyncio.to_thread(_require_course, payload.root)
        return {"course": _serialize_course(course)}

    @app.post("/api/progress/watched")
    async def mark_watched(payload: WatchedPayload) -> Dict[str, Any]:
        try:
            saved = await asyncio.to_thread(
                persister.mark_watched, payload.root, payload.part_id
            )
        except RepositoryError as error:
            raise HTTPException(status_code=503, detail=str(error)) from error
        if not saved:
            raise HTTPException(status_code=404, detail="Course or part not found")
        course = await asyncio.to_thread(_require_course, payload.root)
        return {"course": _serialize_course(course)}

    @app.delete(
        "/api/progress/resume",
        status_code=status.HTTP_204_NO_CONTENT,
        response_class=Response,
    )
    async def clear_resume(root: str = Query(..., min_length=1)) -> Response:
        try:
            cleared = await asyncio.to_thread(persister.clear_resume, _clean_root(root))
        except RepositoryError as error:
            raise HTTPException(status_code=503, detail=str(error)) from error
        if not cleared:
            raise HTTPException(status_code=404, detail="Course not found")
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/api/progress/flush")
    async def flush_progress(root: Optional[str] = Query(None)) -> Dict[str, Any]:
        if root:
            written = int(await asyncio.to_thread(persister.flush_course, root))
        else:
            written = await asyncio.to_thread(persister.flush)
        _log_event("Flushed progress", root=root, written=written)
        return {"written": written}

    @app.get("/api/timestamps")
    async def list_timestamps(
        root: str = Query(..., min_length=1),
        video: Optional[str] = Query(None),
    ) -> Dict[str, Any]:
        course_root = _clean_root(root)
        try:
            if video:
                found = await asyncio.to_thread(bookmarks.for_video, course_root, video)
                return {"video": video, "timestamps": [item.to_dict() for item in found]}
            loaded = await asyncio.to_thread(bookmarks.load, course_root)
        except ValueError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        except RepositoryError as error:
            raise HTTPException(status_code=503, detail=str(error)) from error
        return {
            "timestamps": {
                key: [item.to_dict() for item in values] for key, values in loaded.items()
            }
        }

    @app.post("/api/timestamps", status_code=status.HTTP_201_CREATED)
    async def add_timestamp(payload: TimestampPayload) -> Dict[str, Any]:
        try:
            added = await asyncio.to_thread(
                bookmarks.append,
                payload.root,
                payload.video,
                payload.seconds,
                payload.description,
            )
        except ValueError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        except RepositoryError as error:
            raise HTTPException(status_code=503, detail=str(error)) from error
        _log_event("Added bookmark", root=payload.root, seconds=payload.seconds)
        return {"timestamp": added.to_dict()}

    return app


__all__ = ["create_app"]
