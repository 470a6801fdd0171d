import enum
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobKindColumn(enum.Enum):
    verify = "verify"
    proof = "proof"


class JobStatusColumn(enum.Enum):
    queued = "queued"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class VerificationJob(Base):
    __tablename__ = "VerificationJob"
    id = Column(String, primary_key=True)
    externalJobId = Column(String, nullable=True)  # noqa: N815
    kind = Column(Enum(JobKindColumn), nullable=False)
    status = Column(Enum(JobStatusColumn), nullable=False, default=JobStatusColumn.queued)
    progress = Column(Integer, nullable=False, default=0)
    contentHash = Column(String, nullable=False)  # noqa: N815
    manifestUri = Column(String, nullable=False)  # noqa: N815
    registryAddress = Column(String, nullable=True)  # noqa: N815
    originalFilename = Column(String, nullable=True)  # noqa: N815
    result = Column(Text, nullable=True)  # JSON string of the unit-of-work result
    errorMessage = Column(Text, nullable=True)  # noqa: N815
    attempt = Column(Integer, nullable=False, default=0)
    maxAttempts = Column(Integer, nullable=False, default=3)  # noqa: N815
    createdAt = Column(DateTime, nullable=False, default=utcnow)  # noqa: N815
    updatedAt = Column(DateTime, nullable=True, default=utcnow)  # noqa: N815
    startedAt = Column(DateTime, nullable=True)  # noqa: N815
    completedAt = Column(DateTime, nullable=True)  # noqa: N815

    __table_args__ = (
        Index("VerificationJob_status_idx", "status"),
        Index("VerificationJob_createdAt_idx", "createdAt"),
    )
