from sqlalchemy import String, Text, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime

from mediagen.db.base import Base


class Workflow(Base):
    __tablename__ = 'workflows'

    id: Mapped[str] = mapped_column(String, primary_key=True)

    name: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text, default='')
    category: Mapped[str] = mapped_column(String, index=True)

    api_json: Mapped[dict] = mapped_column(JSON)
    input_mappings: Mapped[list] = mapped_column(JSON)
    output_node_id: Mapped[str] = mapped_column(String, default='')

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, onupdate=datetime.now)
