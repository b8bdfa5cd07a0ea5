"""SQLAlchemy database models for graphs, runs and the step-run ledger."""

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import relationship

from .database import Base


class GraphModel(Base):
    """Database model for stored workflow graphs."""
    __tablename__ = "graphs"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    version = Column(Integer, default=1)
    definition = Column(JSON, nullable=False)  # Complete graph definition
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class RunModel(Base):
    """Database model for workflow runs."""
    __tablename__ = "runs"

    id = Column(String, primary_key=True)
    graph_id = Column(String, index=True)  # Inline graphs are not stored
    graph_snapshot = Column(JSON, nullable=False)
    status = Column(String, nullable=False, index=True)
    mode = Column(String, nullable=False)
    trigger = Column(String, nullable=False)
    input = Column(JSON)
    output = Column(JSON)
    variables = Column(JSON)
    error = Column(JSON)
    pending_step_run_id = Column(String)
    resume_token = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    step_runs = relationship("StepRunModel", back_populates="run", order_by="StepRunModel.sequence_number")


class StepRunModel(Base):
    """Database model for one step attempt."""
    __tablename__ = "step_runs"

    id = Column(String, primary_key=True)
    run_id = Column(String, ForeignKey("runs.id"), nullable=False, index=True)
    step_id = Column(String, nullable=False)
    status = Column(String, nullable=False)
    attempt = Column(Integer, nullable=False, default=1)
    sequence_number = Column(Integer, nullable=False, default=0)
    input = Column(JSON)
    output = Column(JSON)
    selected_ports = Column(JSON)
    error = Column(JSON)
    duration_ms = Column(Integer)
    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    run = relationship("RunModel", back_populates="step_runs")
