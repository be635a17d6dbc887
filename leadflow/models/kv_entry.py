from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP

from leadflow.database import Base, JSONType


class KeyValueEntry(Base):
    __tablename__ = "kv_entries"

    key = Column(Text, primary_key=True)  # namespaced, e.g. chatbot_conversations:<lead>:<template>
    value = Column(JSONType, nullable=False)
    origin = Column(Text)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False)
