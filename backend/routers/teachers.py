import sqlite3

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import AuthContext, require_role
from database.db import (
    add_teacher,
    create_user,
    delete_teacher,
    get_all_teachers,
    get_teacher_by_id,
    update_teacher,
)

router = APIRouter()


class TeacherCreate(BaseModel):
    name: str
    email: str
    phone: str | None = None
    password: str | None = None


class TeacherUpdate(BaseModel):
    name: str
    email: str
    phone: str | None = None


@router.get("/teachers")
def teachers(_ctx: AuthContext = Depends(require_role("admin"))):
    return [t.model_dump() for t in get_all_teachers()]


@router.get("/teachers/{teacher_id}")
def teacher_detail(teacher_id: str, ctx: AuthContext = Depends(require_role("admin", "teacher"))):
    if ctx.role == "teacher" and ctx.entity_id != teacher_id:
        raise HTTPException(status_code=403, detail="Not allowed.")
    teacher = get_teacher_by_id(teacher_id)
    if not teacher:
        raise HTTPException(status_code=404, detail="Teacher not found.")
    return teacher.model_dump()


@router.post("/teachers")
def create_teacher(payload: TeacherCreate, _ctx: AuthContext = Depends(require_role("admin"))):
    name = payload.name.strip()
    email = payload.email.strip()
    phone = (payload.phone or "").strip() or None

    if not name or not email:
        raise HTTPException(status_code=400, detail="Name and email are required.")

    try:
        teacher = add_teacher(name, email, phone)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Email already exists.")

    account = None
    if payload.password and payload.password.strip():
        try:
            create_user(email, payload.password, "teacher", teacher.id)
            account = email
        except sqlite3.IntegrityError:
            delete_teacher(teacher.id)
            raise HTTPException(status_code=409, detail="Username already exists.")

    return {**teacher.model_dump(), "username": account}


@router.put("/teachers/{teacher_id}")
def edit_teacher(
    teacher_id: str,
    payload: TeacherUpdate,
    _ctx: AuthContext = Depends(require_role("admin")),
):
    name = payload.name.strip()
    email = payload.email.strip()
    if not name or not email:
        raise HTTPException(status_code=400, detail="Name and email are required.")
    try:
        ok = update_teacher(teacher_id, name, email, (payload.phone or "").strip() or None)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Email already exists.")
    if not ok:
        raise HTTPException(status_code=404, detail="Teacher not found.")
    return get_teacher_by_id(teacher_id).model_dump()


@router.delete("/teachers/{teacher_id}")
def remove_teacher(teacher_id: str, _ctx: AuthContext = Depends(require_role("admin"))):
    try:
        ok = delete_teacher(teacher_id)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Teacher has attendance sessions and cannot be deleted.")
    if not ok:
        raise HTTPException(status_code=404, detail="Teacher not found.")
    return {"ok": True}
