"""
GalleryItem Model

Media saved by the save_to_gallery node.
"""

from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, ForeignKey
from datetime import datetime
from . import Base


class GalleryItem(Base):
    __tablename__ = "gallery_items"

    id = Column(Integer, primary_key=True, index=True)
    agency_id = Column(Integer, ForeignKey("agencies.id", ondelete="CASCADE"), nullable=False, index=True)
    model_id = Column(Integer, ForeignKey("target_models.id", ondelete="SET NULL"), nullable=True)
    run_id = Column(Integer, ForeignKey("workflow_runs.id", ondelete="SET NULL"), nullable=True)

    # image, video
    media_type = Column(String(20), nullable=False, default="image")
    media_ref = Column(Text, nullable=False)
    caption = Column(Text, nullable=True)
    tags = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<GalleryItem(id={self.id}, media_type='{self.media_type}')>"
