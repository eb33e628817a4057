from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import uuid

from api.src.db.database import Base
from api.src.models.status import BuildStatus, BuildStepStatus, RepoStatus

JsonColumn = JSON().with_variant(JSONB(), "postgresql")

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class GitProvider(Base):
    __tablename__ = "ci_git_providers"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id = Column(Uuid, nullable=False, index=True)
    kind = Column(String(50), nullable=False, default="github")
    domain = Column(String(255), nullable=False, default="github.com")
    login_name = Column(String(255))
    access_token = Column(Text)
    is_syncing = Column(Boolean, nullable=False, default=False)
    last_synced = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)

    repositories = relationship("Repository", back_populates="git_provider")

class Repository(Base):
    __tablename__ = "ci_repositories"
    __table_args__ = (
        UniqueConstraint("git_provider_id", "git_provider_repo_uid"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id = Column(Uuid, nullable=False, index=True)
    git_provider_id = Column(Uuid, ForeignKey("ci_git_providers.id", ondelete="CASCADE"), nullable=False)
    git_provider_repo_uid = Column(String(255), nullable=False)
    owner = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    clone_url = Column(String(500), nullable=False)
    default_branch = Column(String(255))
    status = Column(String(50), nullable=False, default=RepoStatus.INACTIVE.value)
    webhook_secret = Column(String(255))
    webhook_id = Column(String(255))
    runner_id = Column(Uuid)
    build_counter = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    git_provider = relationship("GitProvider", back_populates="repositories")
    builds = relationship("Build", back_populates="repository")

class Build(Base):
    __tablename__ = "ci_builds"
    __table_args__ = (
        UniqueConstraint("repo_id", "build_num"),
        UniqueConstraint("repo_id", "trigger_id"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    repo_id = Column(Uuid, ForeignKey("ci_repositories.id", ondelete="CASCADE"), nullable=False)
    build_num = Column(Integer, nullable=False)
    git_ref = Column(String(500), nullable=False)
    commit_sha = Column(String(64), nullable=False)
    status = Column(String(50), nullable=False, default=BuildStatus.WAITING_TO_START.value)
    event = Column(JsonColumn, nullable=False)
    services = Column(JsonColumn, nullable=False, default=list)
    trigger_id = Column(String(255))
    author = Column(String(255))
    message = Column(Text)
    created = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    started = Column(DateTime(timezone=True))
    finished = Column(DateTime(timezone=True))

    repository = relationship("Repository", back_populates="builds")
    steps = relationship(
        "BuildStep",
        back_populates="build",
        order_by="BuildStep.step_id",
        cascade="all, delete-orphan",
    )

class BuildStep(Base):
    __tablename__ = "ci_build_steps"

    build_id = Column(Uuid, ForeignKey("ci_builds.id", ondelete="CASCADE"), primary_key=True)
    step_id = Column(Integer, primary_key=True)
    name = Column(String(63), nullable=False)
    image = Column(String(500), nullable=False)
    commands = Column(JsonColumn, nullable=False)
    env = Column(JsonColumn, nullable=False, default=dict)
    status = Column(String(50), nullable=False, default=BuildStepStatus.WAITING_TO_START.value)
    started = Column(DateTime(timezone=True))
    finished = Column(DateTime(timezone=True))

    build = relationship("Build", back_populates="steps")
