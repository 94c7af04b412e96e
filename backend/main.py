"""
FastAPI service for the weekly timetable generator.

Configure stores a group's subjects, teachers and classes, Generate runs the
solver on them, and Update lets a person overwrite the stored timetable.
Storage is in-process; a real deployment puts a database behind `store`.
"""

import os
import copy
import time
import json
import logging
import threading
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, field_validator
from typing import Optional, Union

from solver import ConfigurationError, GenerationFailure, generate_timetable, normalize_teachers

# Configure logging
DEBUG_SOLVER = os.environ.get("DEBUG_SOLVER", "").lower() in ("1", "true", "yes")
logging.basicConfig(
    level=logging.DEBUG if DEBUG_SOLVER else logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

if DEBUG_SOLVER:
    logger.info("DEBUG_SOLVER is enabled - verbose logging active")

app = FastAPI(
    title="Timetable Generator API",
    description="Randomized greedy weekly timetable generator",
    version="1.0.0"
)

ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:3001",
]

# Also allow origin from environment variable
if os.environ.get("FRONTEND_URL"):
    ALLOWED_ORIGINS.append(os.environ["FRONTEND_URL"])

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class Subject(BaseModel):
    name: str
    abbreviation: str
    isLab: bool = False
    periodsPerWeek: Optional[int] = None


class Teacher(BaseModel):
    name: str
    subjects: list[str] = []


class SubjectAssignment(BaseModel):
    subject: str
    periods: int
    teacher: Union[str, list[str], None] = Field(default=None, validate_default=True)  # one name or a rotation list

    @field_validator("teacher", mode="after")
    @classmethod
    def teacher_as_list(cls, v):
        return normalize_teachers(v)


class ClassConfig(BaseModel):
    name: str
    periodsPerDay: dict[str, int] = {}
    subjectsAssigned: list[SubjectAssignment] = []


class Settings(BaseModel):
    days: Optional[list[str]] = None
    maxPeriods: Optional[int] = None
    rooms: Optional[list[str]] = None
    attempts: Optional[int] = None
    labMarker: Optional[str] = None


class ConfigureRequest(BaseModel):
    subjects: list[Subject] = []
    teachers: list[Teacher] = []
    classes: list[ClassConfig] = []
    settings: Optional[Settings] = None


class GenerateRequest(BaseModel):
    seed: Optional[int] = None
    maxTimeSeconds: Optional[float] = None


class UpdateRequest(BaseModel):
    timetable: Optional[Union[dict, list]] = None
    className: Optional[str] = None  # overwrite one class's week instead of the whole map


class GroupStore:
    """Per-group configuration and last timetable, keyed by group id.

    Reads hand back deep copies; stored state only changes under the lock.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._groups: dict[str, dict] = {}

    def configure(self, group_id: str, config: dict) -> dict:
        with self._lock:
            group = self._groups.setdefault(group_id, {"timetables": {}})
            group.update(config)
            return copy.deepcopy(group)

    def get(self, group_id: str) -> dict:
        with self._lock:
            group = self._groups.get(group_id)
            if group is None:
                raise KeyError(group_id)
            return copy.deepcopy(group)

    def set_timetables(self, group_id: str, timetables: dict) -> None:
        with self._lock:
            self._groups[group_id]["timetables"] = copy.deepcopy(timetables)

    def set_class_timetable(self, group_id: str, class_name: str, timetable) -> dict:
        with self._lock:
            self._groups[group_id]["timetables"][class_name] = copy.deepcopy(timetable)
            return copy.deepcopy(self._groups[group_id]["timetables"])

    def clear(self) -> None:
        with self._lock:
            self._groups.clear()


store = GroupStore()


def get_group_or_404(group_id: str) -> dict:
    try:
        return store.get(group_id)
    except KeyError:
        raise HTTPException(status_code=404, detail={"message": "Group not found"})


@app.get("/")
async def root():
    return {"message": "Timetable Generator API", "version": "1.0.0"}


@app.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": time.time()}


@app.post("/groups/{group_id}/configure-timetable")
def configure_timetable(group_id: str, request: ConfigureRequest):
    """Store subjects, teachers, classes and optional settings for a group."""
    config = {
        "subjects": [s.model_dump() for s in request.subjects],
        "teachers": [t.model_dump() for t in request.teachers],
        "classes": [
            {
                "name": c.name,
                "periodsPerDay": c.periodsPerDay,
                "subjectsAssigned": [
                    {"subject": sa.subject, "periods": sa.periods, "teachers": sa.teacher}
                    for sa in c.subjectsAssigned
                ],
            }
            for c in request.classes
        ],
        "settings": request.settings.model_dump(exclude_none=True) if request.settings else {},
    }
    group = store.configure(group_id, config)
    logger.info(f"Configured group {group_id}: {len(config['subjects'])} subjects, "
                f"{len(config['teachers'])} teachers, {len(config['classes'])} classes")
    return {"message": "Timetable data saved successfully", "group": group}


@app.post("/groups/{group_id}/generate-timetable")
def generate(group_id: str, request: Optional[GenerateRequest] = None):
    """Generate timetables from the group's stored configuration."""
    request = request or GenerateRequest()
    group = get_group_or_404(group_id)
    start_time = time.time()

    classes = group.get("classes", [])
    logger.info(f"=== GENERATE REQUEST === Group: {group_id}, Classes: {len(classes)}, Seed: {request.seed}")

    if DEBUG_SOLVER:
        logger.debug(f"Settings: {group.get('settings')}, MaxTime: {request.maxTimeSeconds}")
        for c in classes:
            assigned = ", ".join(
                f"{sa['subject']} x{sa['periods']} ({'/'.join(sa['teachers']) or 'no teacher'})"
                for sa in c["subjectsAssigned"]
            )
            logger.debug(f"  Class {c['name']}: {c['periodsPerDay']} - {assigned}")

    try:
        result = generate_timetable(
            subjects=group.get("subjects", []),
            teachers=group.get("teachers", []),
            classes=classes,
            settings=group.get("settings"),
            seed=request.seed,
            max_time_seconds=request.maxTimeSeconds,
        )
    except ConfigurationError as e:
        logger.warning(f"INVALID CONFIG: {e}")
        raise HTTPException(status_code=400, detail={"status": "error", "message": str(e)})
    except GenerationFailure as e:
        logger.warning(f"INFEASIBLE: {e}")
        if DEBUG_SOLVER and e.diagnostics:
            logger.debug(f"Diagnostics: {json.dumps(e.diagnostics, indent=2)}")
        raise HTTPException(
            status_code=422,
            detail={
                "status": "infeasible",
                "message": str(e),
                "attemptsTried": e.attempts_tried,
                "diagnostics": e.diagnostics,
            }
        )
    except Exception as e:
        elapsed = time.time() - start_time
        logger.error(f"GENERATE ERROR: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=500,
            detail={
                "status": "error",
                "message": str(e),
                "elapsedSeconds": elapsed,
            }
        )

    store.set_timetables(group_id, result["timetables"])
    logger.info(f"=== GENERATE RESULT === Attempts: {result['attemptsUsed']}, Time: {result['elapsedSeconds']:.2f}s")
    return {
        "message": "Timetable generated ✅",
        **result,
    }


@app.put("/groups/{group_id}/timetable")
def update_timetable(group_id: str, request: UpdateRequest):
    """Overwrite the stored timetable as-is; manual edits are not re-validated."""
    get_group_or_404(group_id)
    if request.timetable is None:
        raise HTTPException(status_code=400, detail={"message": "Timetable is required."})

    if request.className:
        timetables = store.set_class_timetable(group_id, request.className, request.timetable)
    elif isinstance(request.timetable, dict):
        store.set_timetables(group_id, request.timetable)
        timetables = request.timetable
    else:
        raise HTTPException(
            status_code=400,
            detail={"message": "className is required when updating a single class timetable."}
        )
    return {"message": "Timetable updated ✅", "timetables": timetables}


@app.get("/groups/{group_id}/timetable")
def get_timetable(group_id: str):
    group = get_group_or_404(group_id)
    return {"timetables": group.get("timetables", {})}


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run(app, host="0.0.0.0", port=port)
