# app/services/request_store.py

from typing import Any, Callable, Iterable, Optional, Type, TypeVar
from uuid import UUID

from loguru import logger
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel, select

from app.core.exceptions import ConflictError, NotFoundError
from app.core.timeutils import utcnow
from app.models.student import Student
from app.models.user import User, UserRole

ModelT = TypeVar("ModelT", bound=SQLModel)


# ------------------------------------------------------------
# LOOKUPS
# ------------------------------------------------------------
async def get_or_404(session: AsyncSession, model: Type[ModelT], obj_id: UUID, label: str) -> ModelT:
    obj = await session.get(model, obj_id)
    if not obj:
        raise NotFoundError(f"{label} not found")
    return obj


async def get_user(session: AsyncSession, user_id: Optional[UUID]) -> Optional[User]:
    if not user_id:
        return None
    return await session.get(User, user_id)


async def get_user_by_email(session: AsyncSession, email: str) -> Optional[User]:
    result = await session.execute(select(User).where(User.email == email.lower()))
    return result.scalar_one_or_none()


async def find_hod(session: AsyncSession, department: str) -> Optional[User]:
    result = await session.execute(
        select(User)
        .where(User.role == UserRole.HOD.value, User.department == department)
        .order_by(User.created_at)
    )
    return result.scalars().first()


async def find_class_staff(session: AsyncSession, department: str, year: str, section: str) -> list[User]:
    result = await session.execute(
        select(User).where(
            User.role == UserRole.Staff.value,
            User.department == department,
            User.year == year,
            User.section == section,
        )
    )
    return list(result.scalars().all())


async def find_student(
    session: AsyncSession,
    reg_number: Optional[str] = None,
    phone_number: Optional[str] = None,
) -> Optional[Student]:
    if reg_number:
        result = await session.execute(
            select(Student).where(Student.reg_number == reg_number.strip().upper())
        )
        student = result.scalar_one_or_none()
        if student:
            return student

    if phone_number:
        result = await session.execute(
            select(Student).where(
                (Student.student_phone_number == phone_number)
                | (Student.parent_phone_number == phone_number)
            )
        )
        return result.scalars().first()

    return None


def student_snapshot(student: Student) -> dict:
    """Frozen copy stored on leave and marksheet rows. Never refreshed."""
    return {
        "name": student.name,
        "reg_number": student.reg_number,
        "year": student.year,
        "section": student.section,
        "department": student.department,
        "parent_phone_number": student.parent_phone_number,
    }


# ------------------------------------------------------------
# CONDITIONAL STATUS UPDATE
# ------------------------------------------------------------
async def compare_and_set_status(
    session: AsyncSession,
    model: Type[ModelT],
    obj_id: UUID,
    expected: Iterable[str],
    new_status: str,
    label: str,
    normalize: Callable[[str], str] = lambda s: s,
    touch_updated_at: bool = True,
    **values: Any,
) -> ModelT:
    """
    Single `UPDATE ... WHERE id = ? AND status IN (...)`.

    Zero affected rows means another decision landed first; the fresh row is
    read back so the ConflictError names the status that actually won.
    The caller owns the commit.
    """
    expected = list(expected)
    if touch_updated_at and "updated_at" in model.model_fields:
        values.setdefault("updated_at", utcnow())

    stmt = (
        update(model)
        .where(model.id == obj_id, model.status.in_(expected))
        .values(status=new_status, **values)
    )
    result = await session.execute(stmt)

    if result.rowcount == 0:
        fresh = await session.get(model, obj_id, populate_existing=True)
        if fresh is None:
            raise NotFoundError(f"{label} not found")
        current = normalize(fresh.status)
        logger.info(f"CAS lost on {label} {obj_id}: expected {expected}, found '{current}'")
        raise ConflictError(
            f"{label} is already '{current}'",
            current_status=current,
        )

    return await session.get(model, obj_id, populate_existing=True)
