from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from machine_controller.db import Base


class ClusterRecord(Base):
    __tablename__ = "clusters"

    name: Mapped[str] = mapped_column(String(128), primary_key=True)
    spec_json: Mapped[str] = mapped_column(Text, nullable=False)
    status_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    resource_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class MachineRecord(Base):
    __tablename__ = "machines"

    name: Mapped[str] = mapped_column(String(128), primary_key=True)
    cluster_name: Mapped[str] = mapped_column(
        String(128), ForeignKey("clusters.name"), nullable=False, index=True
    )

    # Owner machine (the orchestrator-level object this infrastructure
    # machine backs).
    control_plane: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    bootstrap_ready: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    node_ref: Mapped[str | None] = mapped_column(String(256))
    bootstrap_data: Mapped[str | None] = mapped_column(Text)

    spec_json: Mapped[str] = mapped_column(Text, nullable=False)
    status_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    resource_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    machine_name: Mapped[str | None] = mapped_column(String(128))
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
