from sqlalchemy import Column, Index, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP

from leadflow.database import Base, JSONType


class Lead(Base):
    __tablename__ = "leads"

    id = Column(Text, primary_key=True)
    tenant_id = Column(Text, nullable=False)
    agent_id = Column(Text)
    full_name = Column(Text)
    email = Column(Text)
    phone = Column(Text)
    stage = Column(Text)  # raw label as written by any surface (may be legacy/localized)
    status = Column(Text)  # active, closed, ...
    # "metadata" is reserved on declarative classes
    lead_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True))
    updated_at = Column(TIMESTAMP(timezone=True))

    __table_args__ = (Index("ix_leads_tenant_created", "tenant_id", "created_at"),)
