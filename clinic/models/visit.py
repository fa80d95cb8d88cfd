"""Visit model (a persisted clinical session)."""
from sqlalchemy import Column, BigInteger, String, Text, Date, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func, expression
from clinic.database import Base, IdType


class Visit(Base):
    """
    Visit - one saved session of a patient's treatment ledger.

    Rows are only written once, when a draft is committed. Amounts are
    integers in the currency minor unit; balance is frozen at save time.
    cumulative_balance is the running sum in (date, id) order and is
    rewritten when a backdated session is saved.
    """

    __tablename__ = 'visit'

    id = Column(IdType, primary_key=True, autoincrement=True)
    patient_id = Column(BigInteger, ForeignKey('patient.id'), nullable=False, index=True)
    date = Column(Date, nullable=False)

    reason_type = Column(String(100), nullable=True)
    reason_detail = Column(Text, nullable=True)
    diagnosis_text = Column(Text, nullable=True)
    clinical_notes = Column(Text, nullable=True)
    signer = Column(String(200), nullable=True)
    tooth_dx_json = Column(Text, nullable=True)

    budget = Column(BigInteger, nullable=False, default=0)
    discount = Column(BigInteger, nullable=False, default=0)
    payment = Column(BigInteger, nullable=False, default=0)
    balance = Column(BigInteger, nullable=False, default=0)
    cumulative_balance = Column(BigInteger, nullable=False, default=0)

    payment_method_id = Column(BigInteger, nullable=True)
    payment_notes = Column(Text, nullable=True)

    is_saved = Column(Boolean, nullable=False, default=True, server_default=expression.true())
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    # Relationships
    patient = relationship('Patient', back_populates='visits')
    procedures = relationship(
        'VisitProcedure',
        back_populates='visit',
        cascade='all, delete-orphan',
        order_by='VisitProcedure.sort_order'
    )

    def __repr__(self):
        return f"<Visit(id={self.id}, patient_id={self.patient_id}, date={self.date}, balance={self.balance})>"
