"""
Agency and TargetModel Models

An agency is the tenant: it owns workflows and the shared credit pool.
A target model is the persona a workflow generates content for; its fields
feed the {{model.*}} template variables.
"""

from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
from . import Base


class Agency(Base):
    __tablename__ = "agencies"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False, unique=True, index=True)

    # Never read-modify-written by the engine; see Repository.deduct_credits
    credit_pool = Column(Integer, nullable=False, default=0)
    credits_used_this_cycle = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    models = relationship("TargetModel", back_populates="agency", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Agency(id={self.id}, slug='{self.slug}', credit_pool={self.credit_pool})>"


class TargetModel(Base):
    __tablename__ = "target_models"

    id = Column(Integer, primary_key=True, index=True)
    agency_id = Column(Integer, ForeignKey("agencies.id", ondelete="CASCADE"), nullable=False, index=True)

    name = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=True)
    onlyfans_handle = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)

    # Example: {"path": "models/anna_v2.safetensors", "weight": 0.8, "triggerWord": "annaxyz"}
    lora_config = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    agency = relationship("Agency", back_populates="models")

    def __repr__(self):
        return f"<TargetModel(id={self.id}, name='{self.name}')>"
