# models.py - Database models for StackFlow
# - Integer primary keys
# - Soft deletes for users (is_deleted), hard deletes everywhere else
# - Optimistic concurrency via a per-row version counter
# - No foreign key that references users cascades; the only cascade
#   path is projects -> tickets -> comments

from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, Boolean, Integer,
    Enum as SQLEnum, ForeignKey, Text, Index, func, text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def _enum(enum_cls, name: str) -> SQLEnum:
    """Persist enum members by value ("To_Do"), not by Python attribute name."""
    return SQLEnum(enum_cls, name=name, values_callable=lambda e: [m.value for m in e])


# ============================================================
# ENUMS
# ============================================================

class ProjectStatus(str, PyEnum):
    ACTIVE = "Active"
    COMPLETED = "Completed"
    ON_HOLD = "On_Hold"


class TicketStatus(str, PyEnum):
    TO_DO = "To_Do"
    IN_PROGRESS = "In_Progress"
    IN_REVIEW = "In_Review"
    DONE = "Done"


class TicketPriority(str, PyEnum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


# Seeded role names. Admin and Developer are reserved: they can be
# neither renamed nor deleted.
ADMIN_ROLE = "Admin"
DEVELOPER_ROLE = "Developer"
PROJECT_MANAGER_ROLE = "Project Manager"
TESTER_ROLE = "Tester"

DEFAULT_ROLES = {
    ADMIN_ROLE: "Full control over projects, tickets, users and roles",
    DEVELOPER_ROLE: "Works on assigned tickets",
    PROJECT_MANAGER_ROLE: "Plans and assigns tickets",
    TESTER_ROLE: "Reviews and verifies tickets",
}
RESERVED_ROLES = frozenset({ADMIN_ROLE, DEVELOPER_ROLE})

_ACTIVE_ONLY = {
    "postgresql_where": text("is_deleted = false"),
    "sqlite_where": text("is_deleted = 0"),
}


# ============================================================
# ROLES
# ============================================================

class Role(Base):
    __tablename__ = "roles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), unique=True, nullable=False)
    description = Column(Text, nullable=False, default="")
    version = Column(Integer, nullable=False)

    # Deleting a role with members must fail in the database; the service
    # moves members to Developer first.
    users = relationship("User", back_populates="role", passive_deletes="all")

    __mapper_args__ = {"version_id_col": version}


# ============================================================
# USERS
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(150), nullable=False)
    email = Column(String(255), nullable=False, index=True)  # stored lower-case
    password_hash = Column(String(255), nullable=False)
    role_id = Column(Integer, ForeignKey("roles.id", ondelete="RESTRICT"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    is_verified = Column(Boolean, default=False, nullable=False, index=True)
    is_deleted = Column(Boolean, default=False, nullable=False, index=True)
    version = Column(Integer, nullable=False)

    role = relationship("Role", back_populates="users")

    __table_args__ = (
        Index("uq_users_email_active", "email", unique=True, **_ACTIVE_ONLY),
    )
    __mapper_args__ = {"version_id_col": version}

    @property
    def is_active(self) -> bool:
        return self.is_verified and not self.is_deleted


# Case-insensitive name uniqueness among non-deleted users
Index("uq_users_name_active", func.lower(User.name), unique=True, **_ACTIVE_ONLY)


# ============================================================
# PROJECTS
# ============================================================

class Project(Base):
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(_enum(ProjectStatus, "projectstatus"), default=ProjectStatus.ACTIVE, nullable=False)
    start_date = Column(DateTime(timezone=True), nullable=True)
    due_date = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    version = Column(Integer, nullable=False)

    creator = relationship("User", foreign_keys=[created_by])
    tickets = relationship(
        "Ticket", back_populates="project",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    __mapper_args__ = {"version_id_col": version}


# ============================================================
# TICKETS
# ============================================================

class Ticket(Base):
    __tablename__ = "tickets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    assigned_to = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=True, index=True)
    status = Column(_enum(TicketStatus, "ticketstatus"), default=TicketStatus.TO_DO, nullable=False, index=True)
    priority = Column(_enum(TicketPriority, "ticketpriority"), default=TicketPriority.LOW, nullable=False)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    due_date = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)  # set iff status == Done
    version = Column(Integer, nullable=False)

    project = relationship("Project", back_populates="tickets")
    assignee = relationship("User", foreign_keys=[assigned_to])
    creator = relationship("User", foreign_keys=[created_by])
    comments = relationship(
        "Comment", back_populates="ticket", order_by="Comment.created_at",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    __table_args__ = (
        Index("idx_ticket_project_status", "project_id", "status"),
    )
    __mapper_args__ = {"version_id_col": version}


# ============================================================
# COMMENTS
# ============================================================

class Comment(Base):
    __tablename__ = "comments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ticket_id = Column(Integer, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    edited_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False)

    ticket = relationship("Ticket", back_populates="comments")
    author = relationship("User", foreign_keys=[created_by])

    __mapper_args__ = {"version_id_col": version}
