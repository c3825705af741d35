from sqlalchemy import String, Text, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime

from mediagen.db.base import Base


class Generation(Base):
    __tablename__ = 'generations'

    id: Mapped[str] = mapped_column(String, primary_key=True)

    mode: Mapped[str] = mapped_column(String, index=True)
    workflow_id: Mapped[str] = mapped_column(String, index=True)

    original_prompt: Mapped[str] = mapped_column(Text)
    enhanced_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    negative_prompt: Mapped[str] = mapped_column(Text, default='')

    params: Mapped[dict] = mapped_column(JSON)
    input_image_path: Mapped[str | None] = mapped_column(String, nullable=True)
    output_files: Mapped[list] = mapped_column(JSON, default=list)

    # idle | queued | processing | completed | error | abandoned
    status: Mapped[str] = mapped_column(String, default='idle')

    comfy_prompt_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
