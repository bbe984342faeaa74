import hashlib
import hmac
import json
import secrets
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterable, Iterator

from backend.config import ADMIN_PASSWORD, ADMIN_USERNAME, DB_PATH
from database.models import (
    AttendanceRecord,
    AttendanceSession,
    Course,
    Role,
    SchoolClass,
    Student,
    Subject,
    Teacher,
    User,
    iso,
)

PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def _new_id() -> str:
    return uuid.uuid4().hex


def connect_db():
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    # recommended with FK tables
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def _connection(conn: sqlite3.Connection | None = None) -> Iterator[sqlite3.Connection]:
    """
    Use the caller's connection (caller commits) or open a short-lived one
    that is committed on success and always closed.
    """
    if conn is not None:
        yield conn
        return

    owned = connect_db()
    try:
        yield owned
        owned.commit()
    except Exception:
        owned.rollback()
        raise
    finally:
        owned.close()


def _ensure_default_admin(cursor: sqlite3.Cursor) -> None:
    username = (ADMIN_USERNAME or "").strip()
    password = (ADMIN_PASSWORD or "").strip()
    if not username or not password:
        return

    cursor.execute(
        """
        SELECT id
        FROM users
        WHERE username = ? COLLATE NOCASE
        """,
        (username,),
    )
    if cursor.fetchone():
        return

    cursor.execute(
        """
        INSERT INTO users (username, password_hash, role, entity_id)
        VALUES (?, ?, 'admin', NULL)
        """,
        (username, _hash_password(password)),
    )


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    cursor.executescript(
        """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL CHECK (role IN ('admin', 'teacher', 'student')),
        entity_id TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS courses (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        duration TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS classes (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        course_id TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (course_id) REFERENCES courses(id)
    );

    CREATE TABLE IF NOT EXISTS subjects (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        course_id TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (course_id) REFERENCES courses(id)
    );

    CREATE TABLE IF NOT EXISTS teachers (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE COLLATE NOCASE,
        phone TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS students (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE COLLATE NOCASE,
        usn TEXT NOT NULL UNIQUE,
        phone TEXT,
        class_id TEXT NOT NULL,
        face_descriptor TEXT,             -- JSON array of floats
        face_image TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (class_id) REFERENCES classes(id)
    );

    CREATE TABLE IF NOT EXISTS attendance_sessions (
        id TEXT PRIMARY KEY,
        teacher_id TEXT NOT NULL,
        subject_id TEXT NOT NULL,
        class_id TEXT NOT NULL,
        start_time TEXT NOT NULL,         -- UTC ISO-8601
        end_time TEXT NOT NULL,           -- UTC ISO-8601
        gps_lat REAL,
        gps_lng REAL,
        gps_radius REAL NOT NULL DEFAULT 50,
        qr_token TEXT,
        status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'expired')),
        created_at TEXT NOT NULL,
        FOREIGN KEY (teacher_id) REFERENCES teachers(id),
        FOREIGN KEY (subject_id) REFERENCES subjects(id),
        FOREIGN KEY (class_id) REFERENCES classes(id)
    );

    CREATE INDEX IF NOT EXISTS idx_sessions_status_end
        ON attendance_sessions(status, end_time);

    CREATE TABLE IF NOT EXISTS attendance_records (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL,
        student_id TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ('present', 'absent')),
        method TEXT,
        marked_at TEXT NOT NULL,
        auto_marked INTEGER NOT NULL DEFAULT 0,
        FOREIGN KEY (session_id) REFERENCES attendance_sessions(id),
        FOREIGN KEY (student_id) REFERENCES students(id) ON DELETE CASCADE,
        UNIQUE(session_id, student_id)
    );
    """
    )

    _ensure_default_admin(cursor)

    conn.commit()
    conn.close()


# -----------------------------
# Row conversion
# -----------------------------
def _student_from_row(row: sqlite3.Row) -> Student:
    data = dict(row)
    data.pop("created_at", None)
    raw_descriptor = data.get("face_descriptor")
    data["face_descriptor"] = json.loads(raw_descriptor) if raw_descriptor else None
    return Student(**data)


def _session_from_row(row: sqlite3.Row) -> AttendanceSession:
    return AttendanceSession(**dict(row))


def _record_from_row(row: sqlite3.Row) -> AttendanceRecord:
    data = dict(row)
    data["auto_marked"] = bool(data["auto_marked"])
    return AttendanceRecord(**data)


def _plain(row: sqlite3.Row, *, drop: Iterable[str] = ("created_at",)) -> dict[str, Any]:
    data = dict(row)
    for key in drop:
        data.pop(key, None)
    return data


# -----------------------------
# Users
# -----------------------------
def create_user(
    username: str,
    password: str,
    role: Role,
    entity_id: str | None = None,
    *,
    conn: sqlite3.Connection | None = None,
) -> int:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        raise ValueError("Username and password are required.")

    with _connection(conn) as active:
        cur = active.execute(
            """
            INSERT INTO users (username, password_hash, role, entity_id)
            VALUES (?, ?, ?, ?)
            """,
            (clean_username, _hash_password(clean_password), role, entity_id),
        )
        return int(cur.lastrowid)


def verify_credentials(username: str, password: str) -> User | None:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        return None

    with _connection() as conn:
        row = conn.execute(
            """
            SELECT id, username, password_hash, role, entity_id
            FROM users
            WHERE username = ? COLLATE NOCASE
            """,
            (clean_username,),
        ).fetchone()

    if not row:
        return None

    if not _verify_password(clean_password, row["password_hash"]):
        return None

    return User(
        id=row["id"],
        username=row["username"],
        role=row["role"],
        entity_id=row["entity_id"],
    )


def delete_users_for_entity(entity_id: str, *, conn: sqlite3.Connection | None = None) -> None:
    with _connection(conn) as active:
        active.execute("DELETE FROM users WHERE entity_id = ?", (entity_id,))


# -----------------------------
# Courses / classes / subjects
# -----------------------------
def add_course(name: str, duration: str | None = None) -> Course:
    course = Course(id=_new_id(), name=name, duration=duration)
    with _connection() as conn:
        conn.execute(
            "INSERT INTO courses (id, name, duration) VALUES (?, ?, ?)",
            (course.id, course.name, course.duration),
        )
    return course


def get_all_courses() -> list[Course]:
    with _connection() as conn:
        rows = conn.execute("SELECT * FROM courses ORDER BY name").fetchall()
    return [Course(**_plain(r)) for r in rows]


def get_course_by_id(course_id: str) -> Course | None:
    with _connection() as conn:
        row = conn.execute("SELECT * FROM courses WHERE id = ?", (course_id,)).fetchone()
    return Course(**_plain(row)) if row else None


def update_course(course_id: str, name: str, duration: str | None) -> bool:
    with _connection() as conn:
        cur = conn.execute(
            "UPDATE courses SET name = ?, duration = ? WHERE id = ?",
            (name, duration, course_id),
        )
        return cur.rowcount > 0


def delete_course(course_id: str) -> bool:
    with _connection() as conn:
        cur = conn.execute("DELETE FROM courses WHERE id = ?", (course_id,))
        return cur.rowcount > 0


def add_class(name: str, course_id: str) -> SchoolClass:
    school_class = SchoolClass(id=_new_id(), name=name, course_id=course_id)
    with _connection() as conn:
        conn.execute(
            "INSERT INTO classes (id, name, course_id) VALUES (?, ?, ?)",
            (school_class.id, school_class.name, school_class.course_id),
        )
    return school_class


def get_all_classes() -> list[SchoolClass]:
    with _connection() as conn:
        rows = conn.execute("SELECT * FROM classes ORDER BY name").fetchall()
    return [SchoolClass(**_plain(r)) for r in rows]


def get_class_by_id(class_id: str) -> SchoolClass | None:
    with _connection() as conn:
        row = conn.execute("SELECT * FROM classes WHERE id = ?", (class_id,)).fetchone()
    return SchoolClass(**_plain(row)) if row else None


def update_class(class_id: str, name: str, course_id: str) -> bool:
    with _connection() as conn:
        cur = conn.execute(
            "UPDATE classes SET name = ?, course_id = ? WHERE id = ?",
            (name, course_id, class_id),
        )
        return cur.rowcount > 0


def delete_class(class_id: str) -> bool:
    with _connection() as conn:
        cur = conn.execute("DELETE FROM classes WHERE id = ?", (class_id,))
        return cur.rowcount > 0


def add_subject(name: str, course_id: str | None = None) -> Subject:
    subject = Subject(id=_new_id(), name=name, course_id=course_id)
    with _connection() as conn:
        conn.execute(
            "INSERT INTO subjects (id, name, course_id) VALUES (?, ?, ?)",
            (subject.id, subject.name, subject.course_id),
        )
    return subject


def get_all_subjects() -> list[Subject]:
    with _connection() as conn:
        rows = conn.execute("SELECT * FROM subjects ORDER BY name").fetchall()
    return [Subject(**_plain(r)) for r in rows]


def get_subject_by_id(subject_id: str) -> Subject | None:
    with _connection() as conn:
        row = conn.execute("SELECT * FROM subjects WHERE id = ?", (subject_id,)).fetchone()
    return Subject(**_plain(row)) if row else None


def update_subject(subject_id: str, name: str, course_id: str | None) -> bool:
    with _connection() as conn:
        cur = conn.execute(
            "UPDATE subjects SET name = ?, course_id = ? WHERE id = ?",
            (name, course_id, subject_id),
        )
        return cur.rowcount > 0


def delete_subject(subject_id: str) -> bool:
    with _connection() as conn:
        cur = conn.execute("DELETE FROM subjects WHERE id = ?", (subject_id,))
        return cur.rowcount > 0


# -----------------------------
# Teachers
# -----------------------------
def add_teacher(name: str, email: str, phone: str | None = None) -> Teacher:
    teacher = Teacher(id=_new_id(), name=name, email=email, phone=phone)
    with _connection() as conn:
        conn.execute(
            "INSERT INTO teachers (id, name, email, phone) VALUES (?, ?, ?, ?)",
            (teacher.id, teacher.name, teacher.email, teacher.phone),
        )
    return teacher


def get_all_teachers() -> list[Teacher]:
    with _connection() as conn:
        rows = conn.execute("SELECT * FROM teachers ORDER BY name").fetchall()
    return [Teacher(**_plain(r)) for r in rows]


def get_teacher_by_id(teacher_id: str) -> Teacher | None:
    with _connection() as conn:
        row = conn.execute("SELECT * FROM teachers WHERE id = ?", (teacher_id,)).fetchone()
    return Teacher(**_plain(row)) if row else None


def update_teacher(teacher_id: str, name: str, email: str, phone: str | None) -> bool:
    with _connection() as conn:
        cur = conn.execute(
            "UPDATE teachers SET name = ?, email = ?, phone = ? WHERE id = ?",
            (name, email, phone, teacher_id),
        )
        return cur.rowcount > 0


def delete_teacher(teacher_id: str) -> bool:
    with _connection() as conn:
        cur = conn.execute("DELETE FROM teachers WHERE id = ?", (teacher_id,))
        if cur.rowcount == 0:
            return False
        delete_users_for_entity(teacher_id, conn=conn)
        return True


# -----------------------------
# Students
# -----------------------------
def add_student(
    *,
    name: str,
    email: str,
    usn: str,
    class_id: str,
    phone: str | None = None,
    face_descriptor: list[float] | None = None,
    face_image: str | None = None,
) -> Student:
    student = Student(
        id=_new_id(),
        name=name,
        email=email,
        usn=usn,
        class_id=class_id,
        phone=phone,
        face_descriptor=face_descriptor,
        face_image=face_image,
    )
    with _connection() as conn:
        conn.execute(
            """
            INSERT INTO students (id, name, email, usn, phone, class_id, face_descriptor, face_image)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                student.id,
                student.name,
                student.email,
                student.usn,
                student.phone,
                student.class_id,
                json.dumps(list(student.face_descriptor)) if student.face_descriptor else None,
                student.face_image,
            ),
        )
    return student


def get_all_students(class_id: str | None = None) -> list[Student]:
    with _connection() as conn:
        if class_id:
            rows = conn.execute(
                "SELECT * FROM students WHERE class_id = ? ORDER BY name",
                (class_id,),
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM students ORDER BY created_at DESC").fetchall()
    return [_student_from_row(r) for r in rows]


def get_student_by_id(student_id: str) -> Student | None:
    with _connection() as conn:
        row = conn.execute("SELECT * FROM students WHERE id = ?", (student_id,)).fetchone()
    return _student_from_row(row) if row else None


def get_student_ids_in_class(class_id: str, *, conn: sqlite3.Connection | None = None) -> list[str]:
    with _connection(conn) as active:
        rows = active.execute(
            "SELECT id FROM students WHERE class_id = ? ORDER BY id",
            (class_id,),
        ).fetchall()
    return [str(r["id"]) for r in rows]


def update_student(
    student_id: str,
    *,
    name: str,
    email: str,
    usn: str,
    class_id: str,
    phone: str | None,
) -> bool:
    with _connection() as conn:
        cur = conn.execute(
            """
            UPDATE students
            SET name = ?, email = ?, usn = ?, class_id = ?, phone = ?
            WHERE id = ?
            """,
            (name, email, usn, class_id, phone, student_id),
        )
        return cur.rowcount > 0


def set_student_face(student_id: str, descriptor: list[float], face_image: str | None) -> bool:
    with _connection() as conn:
        cur = conn.execute(
            "UPDATE students SET face_descriptor = ?, face_image = ? WHERE id = ?",
            (json.dumps([float(v) for v in descriptor]), face_image, student_id),
        )
        return cur.rowcount > 0


def delete_student(student_id: str) -> int | None:
    """
    Delete a student and, through the FK cascade, their attendance records.
    Returns the number of records removed, or None if the student is unknown.
    """
    with _connection() as conn:
        removed = conn.execute(
            "SELECT COUNT(*) FROM attendance_records WHERE student_id = ?",
            (student_id,),
        ).fetchone()[0]
        cur = conn.execute("DELETE FROM students WHERE id = ?", (student_id,))
        if cur.rowcount == 0:
            return None
        delete_users_for_entity(student_id, conn=conn)
        return int(removed)


# -----------------------------
# Attendance sessions
# -----------------------------
def insert_session(session: AttendanceSession, *, conn: sqlite3.Connection | None = None) -> None:
    with _connection(conn) as active:
        active.execute(
            """
            INSERT INTO attendance_sessions (
                id, teacher_id, subject_id, class_id, start_time, end_time,
                gps_lat, gps_lng, gps_radius, qr_token, status, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session.id,
                session.teacher_id,
                session.subject_id,
                session.class_id,
                iso(session.start_time),
                iso(session.end_time),
                session.gps_lat,
                session.gps_lng,
                session.gps_radius,
                session.qr_token,
                session.status,
                iso(session.created_at or session.start_time),
            ),
        )


def get_session_by_id(
    session_id: str,
    *,
    conn: sqlite3.Connection | None = None,
) -> AttendanceSession | None:
    with _connection(conn) as active:
        row = active.execute(
            "SELECT * FROM attendance_sessions WHERE id = ?",
            (session_id,),
        ).fetchone()
    return _session_from_row(row) if row else None


def get_sessions_due_for_expiry(now: datetime) -> list[dict[str, Any]]:
    """Raw rows; the caller validates each one so a bad row cannot hide the rest."""
    with _connection() as conn:
        rows = conn.execute(
            """
            SELECT *
            FROM attendance_sessions
            WHERE status = 'active'
              AND end_time < ?
            ORDER BY end_time ASC
            """,
            (iso(now),),
        ).fetchall()
    return [dict(r) for r in rows]


def get_open_sessions_for_class(class_id: str, now: datetime) -> list[AttendanceSession]:
    with _connection() as conn:
        rows = conn.execute(
            """
            SELECT *
            FROM attendance_sessions
            WHERE class_id = ?
              AND status = 'active'
              AND end_time > ?
            ORDER BY end_time ASC
            """,
            (class_id, iso(now)),
        ).fetchall()
    return [_session_from_row(r) for r in rows]


def get_sessions_for_teacher(teacher_id: str | None, status: str | None = None) -> list[dict]:
    """
    Session history with attendance counts, newest first.
    `teacher_id=None` lists every teacher's sessions (admin view).
    """
    where = []
    params: list[Any] = []
    if teacher_id:
        where.append("s.teacher_id = ?")
        params.append(teacher_id)
    if status:
        where.append("s.status = ?")
        params.append(status)
    where_sql = f"WHERE {' AND '.join(where)}" if where else ""

    with _connection() as conn:
        rows = conn.execute(
            f"""
            SELECT
                s.*,
                sub.name AS subject_name,
                c.name AS class_name,
                (
                    SELECT COUNT(*)
                    FROM attendance_records r
                    WHERE r.session_id = s.id AND r.status = 'present'
                ) AS attendance_count,
                (
                    SELECT COUNT(*)
                    FROM students st
                    WHERE st.class_id = s.class_id
                ) AS total_students
            FROM attendance_sessions s
            LEFT JOIN subjects sub ON sub.id = s.subject_id
            LEFT JOIN classes c ON c.id = s.class_id
            {where_sql}
            ORDER BY s.start_time DESC
            """,
            params,
        ).fetchall()
    return [dict(r) for r in rows]


def set_session_status(
    session_id: str,
    status: str,
    *,
    conn: sqlite3.Connection | None = None,
) -> bool:
    # unconditional write; both writers only ever set 'expired'
    with _connection(conn) as active:
        cur = active.execute(
            "UPDATE attendance_sessions SET status = ? WHERE id = ?",
            (status, session_id),
        )
        return cur.rowcount > 0


def delete_session(session_id: str) -> bool:
    """Raises sqlite3.IntegrityError while attendance records reference the session."""
    with _connection() as conn:
        cur = conn.execute("DELETE FROM attendance_sessions WHERE id = ?", (session_id,))
        return cur.rowcount > 0


# -----------------------------
# Attendance records
# -----------------------------
def attendance_record_exists(
    session_id: str,
    student_id: str,
    *,
    conn: sqlite3.Connection | None = None,
) -> bool:
    with _connection(conn) as active:
        row = active.execute(
            """
            SELECT 1
            FROM attendance_records
            WHERE session_id = ? AND student_id = ?
            LIMIT 1
            """,
            (session_id, student_id),
        ).fetchone()
    return row is not None


def insert_attendance_record(
    record: AttendanceRecord,
    *,
    conn: sqlite3.Connection | None = None,
) -> AttendanceRecord:
    """Raises sqlite3.IntegrityError if (session, student) already has a record."""
    stored = record if record.id else record.model_copy(update={"id": _new_id()})
    with _connection(conn) as active:
        active.execute(
            """
            INSERT INTO attendance_records (
                id, session_id, student_id, status, method, marked_at, auto_marked
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                stored.id,
                stored.session_id,
                stored.student_id,
                stored.status,
                stored.method,
                iso(stored.marked_at),
                int(stored.auto_marked),
            ),
        )
    return stored


def insert_absences(
    session_id: str,
    student_ids: list[str],
    marked_at: datetime,
    *,
    conn: sqlite3.Connection | None = None,
) -> int:
    """
    Bulk insert auto-marked absences. Students who gained a record in the
    meantime are skipped by the uniqueness index; returns rows inserted.
    """
    if not student_ids:
        return 0
    marked = iso(marked_at)
    with _connection(conn) as active:
        before = active.total_changes
        active.executemany(
            """
            INSERT OR IGNORE INTO attendance_records (
                id, session_id, student_id, status, method, marked_at, auto_marked
            )
            VALUES (?, ?, ?, 'absent', NULL, ?, 1)
            """,
            [(_new_id(), session_id, student_id, marked) for student_id in student_ids],
        )
        return active.total_changes - before


def get_records_for_session(
    session_id: str,
    *,
    conn: sqlite3.Connection | None = None,
) -> list[AttendanceRecord]:
    with _connection(conn) as active:
        rows = active.execute(
            "SELECT * FROM attendance_records WHERE session_id = ? ORDER BY marked_at",
            (session_id,),
        ).fetchall()
    return [_record_from_row(r) for r in rows]


def get_attendance_report(
    *,
    date: str | None = None,
    status: str | None = None,
    student_id: str | None = None,
    student_query: str | None = None,
    class_id: str | None = None,
    subject_id: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[dict]:
    where = []
    params: list[Any] = []
    if date:
        # marked_at is stored as UTC ISO; a date filter matches its prefix
        where.append("substr(r.marked_at, 1, 10) = ?")
        params.append(date)
    if status:
        where.append("r.status = ?")
        params.append(status)
    if student_id:
        where.append("r.student_id = ?")
        params.append(student_id)
    if student_query:
        where.append("(st.name LIKE ? OR st.usn LIKE ?)")
        like = f"%{student_query.strip()}%"
        params.extend([like, like])
    if class_id:
        where.append("s.class_id = ?")
        params.append(class_id)
    if subject_id:
        where.append("s.subject_id = ?")
        params.append(subject_id)
    where_sql = f"WHERE {' AND '.join(where)}" if where else ""

    with _connection() as conn:
        rows = conn.execute(
            f"""
            SELECT
                r.id,
                r.session_id,
                r.student_id,
                r.status,
                r.method,
                r.marked_at,
                r.auto_marked,
                st.name AS student_name,
                st.usn AS student_usn,
                sub.name AS subject_name,
                c.name AS class_name
            FROM attendance_records r
            JOIN students st ON st.id = r.student_id
            JOIN attendance_sessions s ON s.id = r.session_id
            LEFT JOIN subjects sub ON sub.id = s.subject_id
            LEFT JOIN classes c ON c.id = s.class_id
            {where_sql}
            ORDER BY r.marked_at DESC
            LIMIT ? OFFSET ?
            """,
            [*params, limit, offset],
        ).fetchall()

    report = []
    for r in rows:
        item = dict(r)
        item["auto_marked"] = bool(item["auto_marked"])
        report.append(item)
    return report
