from sqlalchemy import Column, Text, String, DateTime, ForeignKey, Integer, Boolean, JSON, Uuid, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, declarative_base
from sqlalchemy.sql import func
import uuid_utils
import uuid


def generate_uuid7():
    """Generate UUIDv7 and convert to standard Python UUID"""
    uuid7_obj = uuid_utils.uuid7()
    return uuid.UUID(str(uuid7_obj))

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JsonPayload = JSON().with_variant(JSONB(), "postgresql")


class WebJobRecord(Base):
    __tablename__ = 'web_jobs'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid7)
    site_key = Column(String(100), nullable=False, index=True)
    brand = Column(String(200), nullable=False, default="")
    job_status = Column(String(20), nullable=False, index=True)
    revision = Column(Integer, nullable=False, default=0)
    payload = Column(JsonPayload, nullable=False)
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    publish_logs = relationship(
        "PublishLogRecord",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="PublishLogRecord.created_at"
    )

    def __repr__(self):
        return (
            f"<WebJobRecord(id={self.id}, site='{self.site_key}', status='{self.job_status}', "
            f"revision={self.revision})>"
        )


class PublishLogRecord(Base):
    __tablename__ = 'publish_logs'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid7)
    job_id = Column(Uuid(as_uuid=True), ForeignKey('web_jobs.id', ondelete='CASCADE'), nullable=False)
    site_key = Column(String(100), nullable=False)
    job_status = Column(String(20), nullable=False)
    dry_run = Column(Boolean, nullable=False, default=False)
    pages_ok = Column(Integer, nullable=False, default=0)
    pages_failed = Column(Integer, nullable=False, default=0)
    results = Column(JsonPayload)
    error = Column(Text)
    created_at = Column(DateTime, default=func.now(), nullable=False)

    job = relationship("WebJobRecord", back_populates="publish_logs")

    __table_args__ = (
        Index('ix_publish_logs_job_id_created', 'job_id', 'created_at'),
    )

    def __repr__(self):
        return (
            f"<PublishLogRecord(id={self.id}, job_id={self.job_id}, status='{self.job_status}', "
            f"ok={self.pages_ok}, failed={self.pages_failed})>"
        )
