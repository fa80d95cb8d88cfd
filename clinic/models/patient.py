"""Patient model."""
from sqlalchemy import Column, String, Text, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from clinic.database import Base, IdType


class Patient(Base):
    """Patient (master data, read by the ledger)."""

    __tablename__ = 'patient'

    id = Column(IdType, primary_key=True, autoincrement=True)
    full_name = Column(String(200), nullable=False)
    doc_id = Column(String(50), nullable=True, index=True)
    phone = Column(String(50), nullable=True)
    email = Column(String(255), nullable=True)
    anamnesis = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default='active', server_default='active')
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    # Relationships
    visits = relationship('Visit', back_populates='patient', order_by='[Visit.date, Visit.id]')

    def __repr__(self):
        return f"<Patient(id={self.id}, full_name='{self.full_name}')>"
