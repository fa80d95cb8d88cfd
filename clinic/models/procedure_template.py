"""Procedure Template model (shared catalog)."""
from sqlalchemy import Column, BigInteger, String, DateTime, Boolean
from sqlalchemy.sql import func, expression
from clinic.database import Base, IdType


class ProcedureTemplate(Base):
    """Procedure Template (catálogo de procedimientos)."""

    __tablename__ = 'procedure_template'

    id = Column(IdType, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False, unique=True)
    default_price = Column(BigInteger, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True, server_default=expression.true())
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self):
        return f"<ProcedureTemplate(id={self.id}, name='{self.name}', default_price={self.default_price})>"
