import sqlite3

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import require_role
from backend.services.absence import reconcile_expired_sessions
from database.db import (
    add_class,
    add_course,
    add_subject,
    delete_class,
    delete_course,
    delete_subject,
    get_all_classes,
    get_all_courses,
    get_all_subjects,
    get_course_by_id,
    update_class,
    update_course,
    update_subject,
)

router = APIRouter(dependencies=[Depends(require_role("admin"))])


class CoursePayload(BaseModel):
    name: str
    duration: str | None = None


class ClassPayload(BaseModel):
    name: str
    course_id: str


class SubjectPayload(BaseModel):
    name: str
    course_id: str | None = None


def _clean_name(name: str) -> str:
    clean = name.strip()
    if not clean:
        raise HTTPException(status_code=400, detail="Name is required.")
    return clean


def _require_course(course_id: str | None) -> str | None:
    clean = (course_id or "").strip() or None
    if clean and not get_course_by_id(clean):
        raise HTTPException(status_code=400, detail="Course not found.")
    return clean


def _in_use(kind: str) -> HTTPException:
    return HTTPException(status_code=409, detail=f"{kind} is still referenced and cannot be deleted.")


# -----------------------------
# Courses
# -----------------------------
@router.get("/admin/courses")
def courses():
    return [c.model_dump() for c in get_all_courses()]


@router.post("/admin/courses")
def create_course(payload: CoursePayload):
    course = add_course(_clean_name(payload.name), (payload.duration or "").strip() or None)
    return course.model_dump()


@router.put("/admin/courses/{course_id}")
def edit_course(course_id: str, payload: CoursePayload):
    if not update_course(course_id, _clean_name(payload.name), (payload.duration or "").strip() or None):
        raise HTTPException(status_code=404, detail="Course not found.")
    return {"ok": True}


@router.delete("/admin/courses/{course_id}")
def remove_course(course_id: str):
    try:
        ok = delete_course(course_id)
    except sqlite3.IntegrityError:
        raise _in_use("Course")
    if not ok:
        raise HTTPException(status_code=404, detail="Course not found.")
    return {"ok": True}


# -----------------------------
# Classes
# -----------------------------
@router.get("/admin/classes")
def classes():
    return [c.model_dump() for c in get_all_classes()]


@router.post("/admin/classes")
def create_class(payload: ClassPayload):
    course_id = _require_course(payload.course_id)
    if not course_id:
        raise HTTPException(status_code=400, detail="Course is required.")
    return add_class(_clean_name(payload.name), course_id).model_dump()


@router.put("/admin/classes/{class_id}")
def edit_class(class_id: str, payload: ClassPayload):
    course_id = _require_course(payload.course_id)
    if not course_id:
        raise HTTPException(status_code=400, detail="Course is required.")
    if not update_class(class_id, _clean_name(payload.name), course_id):
        raise HTTPException(status_code=404, detail="Class not found.")
    return {"ok": True}


@router.delete("/admin/classes/{class_id}")
def remove_class(class_id: str):
    try:
        ok = delete_class(class_id)
    except sqlite3.IntegrityError:
        raise _in_use("Class")
    if not ok:
        raise HTTPException(status_code=404, detail="Class not found.")
    return {"ok": True}


# -----------------------------
# Subjects
# -----------------------------
@router.get("/admin/subjects")
def subjects():
    return [s.model_dump() for s in get_all_subjects()]


@router.post("/admin/subjects")
def create_subject(payload: SubjectPayload):
    course_id = _require_course(payload.course_id)
    return add_subject(_clean_name(payload.name), course_id).model_dump()


@router.put("/admin/subjects/{subject_id}")
def edit_subject(subject_id: str, payload: SubjectPayload):
    course_id = _require_course(payload.course_id)
    if not update_subject(subject_id, _clean_name(payload.name), course_id):
        raise HTTPException(status_code=404, detail="Subject not found.")
    return {"ok": True}


@router.delete("/admin/subjects/{subject_id}")
def remove_subject(subject_id: str):
    try:
        ok = delete_subject(subject_id)
    except sqlite3.IntegrityError:
        raise _in_use("Subject")
    if not ok:
        raise HTTPException(status_code=404, detail="Subject not found.")
    return {"ok": True}


# -----------------------------
# Attendance maintenance
# -----------------------------
@router.post("/admin/attendance/reconcile")
def run_absence_reconciliation():
    report = reconcile_expired_sessions()
    return {
        "ok": True,
        "message": f"Marked {report['absent_marked']} students absent.",
        **report,
    }

