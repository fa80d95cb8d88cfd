"""Visit Procedure model."""
from sqlalchemy import Column, BigInteger, Integer, String, Text, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import expression
from clinic.database import Base, IdType


class VisitProcedure(Base):
    """Visit Procedure (billable line of a saved visit, name and price are snapshots)."""

    __tablename__ = 'visit_procedure'

    id = Column(IdType, primary_key=True, autoincrement=True)
    visit_id = Column(BigInteger, ForeignKey('visit.id', ondelete='CASCADE'), nullable=False, index=True)
    procedure_template_id = Column(BigInteger, ForeignKey('procedure_template.id'), nullable=True, index=True)

    name = Column(String(200), nullable=False, default='')
    unit_price = Column(BigInteger, nullable=False, default=0)
    quantity = Column(BigInteger, nullable=False, default=0)
    subtotal = Column(BigInteger, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True, server_default=expression.true())

    tooth_number = Column(String(10), nullable=True)
    notes = Column(Text, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)

    # Relationships
    visit = relationship('Visit', back_populates='procedures')
    template = relationship('ProcedureTemplate')

    def __repr__(self):
        return f"<VisitProcedure(id={self.id}, name='{self.name}', quantity={self.quantity})>"
