import logging
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .companion import CompanionService, build_companion
from .exceptions import CompanionError
from .models import Encounter, KnownPerson, Task, TaskStatus

logger = logging.getLogger("face_companion.web_app")


class SaveBody(BaseModel):
    name: str
    relationship: Optional[str] = None


class AudioBody(BaseModel):
    enabled: bool


class TaskBody(BaseModel):
    name: str
    scheduled_time: datetime
    location: Optional[str] = None
    description: Optional[str] = None


class TaskStatusBody(BaseModel):
    status: TaskStatus


class RemindersBody(BaseModel):
    enabled: bool = True
    lead_minutes: Optional[int] = None


def _http_error(exc: CompanionError) -> HTTPException:
    status_code = 503 if exc.session_fatal else 400
    return HTTPException(status_code=status_code, detail=str(exc))


def _person_payload(person: KnownPerson) -> dict:
    return {
        "id": person.id,
        "name": person.name,
        "relationship": person.relationship,
        "has_face_data": bool(person.face_encoding),
        "has_photo": bool(person.photo),
        "created_at": person.created_at,
    }


def _task_payload(task: Task) -> dict:
    return {
        "id": task.id,
        "name": task.name,
        "scheduled_time": task.scheduled_time.isoformat(timespec="seconds"),
        "location": task.location,
        "description": task.description,
        "status": task.status.value,
        "completed_at": task.completed_at,
    }


def _encounter_payload(encounter: Encounter) -> dict:
    return {
        "id": encounter.id,
        "encounter_time": encounter.encounter_time,
        "action": encounter.action,
        "saved_as_known": encounter.saved_as_known,
        "notes": encounter.notes,
    }


def create_web_app(service: Optional[CompanionService] = None) -> FastAPI:
    app = FastAPI(title="Face Companion", version="1.0.0")
    companion = service if service is not None else build_companion()
    app.state.companion = companion

    @app.on_event("startup")
    async def _startup() -> None:
        try:
            await companion.start_reminders()
        except CompanionError as exc:
            companion.last_error = f"Reminder startup failed: {exc}"
            logger.exception("Reminder scheduler failed to start")

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await companion.close()

    @app.get("/api/state")
    async def state():
        return JSONResponse(companion.get_state())

    @app.post("/api/loop/start")
    async def start_loop():
        try:
            started = await companion.start_loop()
        except CompanionError as exc:
            raise _http_error(exc) from exc
        return {"ok": True, "started": started}

    @app.post("/api/loop/stop")
    async def stop_loop():
        stopped = await companion.stop_loop()
        return {"ok": True, "stopped": stopped}

    @app.post("/api/capture")
    async def capture():
        try:
            pending = await companion.capture_now()
        except CompanionError as exc:
            raise _http_error(exc) from exc
        return {"ok": True, "pending": pending}

    @app.post("/api/save/request")
    async def request_save():
        try:
            pending = companion.request_save()
        except CompanionError as exc:
            raise _http_error(exc) from exc
        return {"ok": True, "pending": pending}

    @app.post("/api/save")
    async def save(payload: SaveBody):
        try:
            person = await companion.confirm_save(payload.name, payload.relationship)
        except CompanionError as exc:
            raise _http_error(exc) from exc
        return {"ok": True, "person": _person_payload(person)}

    @app.post("/api/save/cancel")
    async def cancel_save():
        companion.cancel_save()
        return {"ok": True}

    @app.post("/api/audio")
    async def set_audio(payload: AudioBody):
        return {"ok": True, "audio_enabled": companion.set_audio_enabled(payload.enabled)}

    @app.get("/api/tasks")
    async def list_tasks(status: Optional[TaskStatus] = None):
        tasks = await companion.list_tasks(status)
        return {"tasks": [_task_payload(task) for task in tasks]}

    @app.post("/api/tasks")
    async def create_task(payload: TaskBody):
        try:
            task = await companion.add_task(
                payload.name,
                payload.scheduled_time,
                location=payload.location,
                description=payload.description,
            )
        except CompanionError as exc:
            raise _http_error(exc) from exc
        return {"ok": True, "task": _task_payload(task)}

    @app.post("/api/tasks/{task_id}/status")
    async def set_task_status(task_id: str, payload: TaskStatusBody):
        task = await companion.set_task_status(task_id, payload.status)
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found.")
        return {"ok": True, "task": _task_payload(task)}

    @app.delete("/api/tasks/{task_id}")
    async def delete_task(task_id: str):
        if not await companion.delete_task(task_id):
            raise HTTPException(status_code=404, detail="Task not found.")
        return {"ok": True}

    @app.post("/api/tasks/{task_id}/remind")
    async def remind_task(task_id: str):
        spoken = await companion.remind_now(task_id)
        if spoken is None:
            raise HTTPException(status_code=404, detail="Task not found.")
        return {"ok": True, "spoken": spoken}

    @app.post("/api/reminders/start")
    async def start_reminders(payload: RemindersBody):
        await companion.start_reminders(enabled=payload.enabled, lead_minutes=payload.lead_minutes)
        return {"ok": True, "running": companion.scheduler.running}

    @app.post("/api/reminders/stop")
    async def stop_reminders():
        companion.stop_reminders()
        return {"ok": True}

    @app.post("/api/reminders/reset")
    async def reset_reminders():
        companion.reset_reminders()
        return {"ok": True}

    @app.get("/api/people")
    async def list_people():
        people = await companion.list_people()
        return {"people": [_person_payload(person) for person in people]}

    @app.get("/api/encounters")
    async def list_encounters(limit: int = 50):
        encounters = await companion.list_encounters(limit)
        return {"encounters": [_encounter_payload(encounter) for encounter in encounters]}

    return app
