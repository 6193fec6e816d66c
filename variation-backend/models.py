# models.py

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from database import Base


class Job(Base):
    """Job model for tracking variation processing requests."""

    __tablename__ = "jobs"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, index=True)
    status = Column(String, default="active")  # active, completed, failed
    progress = Column(Integer, default=0)
    video_id = Column(String, nullable=False)
    variation_count = Column(Integer, nullable=False)
    error = Column(Text, nullable=True)
    started_at = Column(DateTime, nullable=False)
    finished_at = Column(DateTime, nullable=True)

    results = relationship(
        "Variation",
        order_by="Variation.position",
        back_populates="job",
        cascade="all, delete-orphan",
    )


class Variation(Base):
    """One produced variation; never updated after insert."""

    __tablename__ = "variations"

    id = Column(String, primary_key=True)
    job_id = Column(Integer, ForeignKey("jobs.id"), index=True, nullable=False)
    position = Column(Integer, nullable=False)
    name = Column(String, nullable=False)
    method = Column(String, nullable=False)
    similarity = Column(Integer, nullable=False)
    size_bytes = Column(Integer, nullable=False)
    effects = Column(JSON, nullable=False, default=list)
    processed_at = Column(DateTime, nullable=False)

    job = relationship("Job", back_populates="results")
