import logging
import sqlite3

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel

from backend.capture import ALLOWED_IMAGE_TYPES
from backend.errors import AttendanceError
from backend.security import AuthContext, require_role
from biometrics.enroll import build_reference_descriptor, image_data_url
from database.db import (
    add_student,
    create_user,
    delete_student,
    get_all_students,
    get_class_by_id,
    get_student_by_id,
    set_student_face,
    update_student,
)
from database.models import Student

logger = logging.getLogger(__name__)

router = APIRouter()


class StudentUpdate(BaseModel):
    name: str
    email: str
    usn: str
    class_id: str
    phone: str | None = None


def _student_payload(student: Student) -> dict:
    data = student.model_dump(exclude={"face_descriptor"})
    data["has_face_profile"] = student.has_face_profile
    return data


async def _enroll_faces(files: list[UploadFile]) -> tuple[list[float], str]:
    valid_files = [f for f in files if f.content_type in ALLOWED_IMAGE_TYPES]
    if not valid_files:
        raise HTTPException(status_code=400, detail="Upload JPG/PNG only.")

    images = [await f.read() for f in valid_files]
    try:
        descriptor = build_reference_descriptor(images)
    except AttendanceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_detail())
    return descriptor, image_data_url(images[0], valid_files[0].content_type)


def _require_class(class_id: str) -> None:
    if not get_class_by_id(class_id):
        raise HTTPException(status_code=400, detail="Class not found.")


@router.get("/students")
def students(
    class_id: str | None = None,
    _ctx: AuthContext = Depends(require_role("admin", "teacher")),
):
    return [_student_payload(s) for s in get_all_students(class_id)]


@router.get("/students/{student_id}")
def student_detail(student_id: str, ctx: AuthContext = Depends(require_role("admin", "teacher", "student"))):
    if ctx.role == "student" and ctx.entity_id != student_id:
        raise HTTPException(status_code=403, detail="Not allowed.")
    student = get_student_by_id(student_id)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found.")
    return _student_payload(student)


# Register a student; face images are optional here and can be added later
@router.post("/students")
async def create_student(
    _ctx: AuthContext = Depends(require_role("admin")),
    name: str = Form(...),
    email: str = Form(...),
    usn: str = Form(...),
    class_id: str = Form(...),
    phone: str | None = Form(default=None),
    password: str | None = Form(default=None),
    files: list[UploadFile] | None = File(default=None),
):
    name, email, usn, class_id = name.strip(), email.strip(), usn.strip(), class_id.strip()
    if not name or not email or not usn or not class_id:
        raise HTTPException(status_code=400, detail="Name, email, USN and class are required.")
    _require_class(class_id)

    descriptor, face_image = None, None
    if files:
        # descriptor first: nothing is stored for a photo without a face
        descriptor, face_image = await _enroll_faces(files)

    try:
        student = add_student(
            name=name,
            email=email,
            usn=usn,
            class_id=class_id,
            phone=(phone or "").strip() or None,
            face_descriptor=descriptor,
            face_image=face_image,
        )
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Email or USN already exists.")

    account = None
    if password and password.strip():
        try:
            create_user(usn, password, "student", student.id)
            account = usn
        except sqlite3.IntegrityError:
            delete_student(student.id)
            raise HTTPException(status_code=409, detail="Username already exists.")

    logger.info("Registered student %s (face profile: %s)", student.id, student.has_face_profile)
    return {**_student_payload(student), "username": account}


@router.put("/students/{student_id}")
def edit_student(
    student_id: str,
    payload: StudentUpdate,
    _ctx: AuthContext = Depends(require_role("admin")),
):
    class_id = payload.class_id.strip()
    _require_class(class_id)
    try:
        ok = update_student(
            student_id,
            name=payload.name.strip(),
            email=payload.email.strip(),
            usn=payload.usn.strip(),
            class_id=class_id,
            phone=(payload.phone or "").strip() or None,
        )
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Email or USN already exists.")
    if not ok:
        raise HTTPException(status_code=404, detail="Student not found.")
    return _student_payload(get_student_by_id(student_id))


@router.post("/students/{student_id}/face")
async def enroll_face(
    student_id: str,
    _ctx: AuthContext = Depends(require_role("admin")),
    files: list[UploadFile] = File(...),
):
    if not files:
        raise HTTPException(status_code=400, detail="At least 1 face image is required.")
    if not get_student_by_id(student_id):
        raise HTTPException(status_code=404, detail="Student not found.")

    descriptor, face_image = await _enroll_faces(files)
    set_student_face(student_id, descriptor, face_image)
    logger.info("Updated face profile for student %s", student_id)
    return {"id": student_id, "has_face_profile": True, "images_used": len(files)}


@router.delete("/students/{student_id}")
def remove_student(student_id: str, _ctx: AuthContext = Depends(require_role("admin"))):
    removed = delete_student(student_id)
    if removed is None:
        raise HTTPException(status_code=404, detail="Student not found.")
    logger.info("Deleted student %s and %s attendance records", student_id, removed)
    return {"ok": True, "attendance_records_removed": removed}
