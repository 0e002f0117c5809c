from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from medcheckout.database import Base


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class KVEntry(Base):
    __tablename__ = "kv_entries"

    key = Column(String, primary_key=True)         # e.g. intake:phi:<token>
    value = Column(Text, nullable=False)           # JSON document
    expires_at = Column(DateTime, nullable=True, index=True)   # naive UTC


class FanoutFailure(Base):
    __tablename__ = "fanout_failures"

    id = Column(Integer, primary_key=True, autoincrement=True)
    integration = Column(String, index=True)       # intakeq | airtable | ghl | meta
    payment_intent_id = Column(String, index=True)
    error = Column(Text)
    payload = Column(Text)                         # PaymentIntent JSON
    attempts = Column(Integer, default=1)
    resolved = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
