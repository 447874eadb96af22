from sqlalchemy import Column, DateTime, Integer, Text
from sqlalchemy.sql import func

from app.database import Base


class AutomationLog(Base):
    """Analytics row written once per reply actually sent."""

    __tablename__ = "automation_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    automation_id = Column(Text, nullable=False, index=True)
    trigger_type = Column(Text, nullable=False)  # comment, dm, dm_conversation, follow
    trigger_text = Column(Text)
    user_id = Column(Text, nullable=False)
    username = Column(Text)
    triggered_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class DispatchRecord(Base):
    """Outcome of every processed event, including skips and failures."""

    __tablename__ = "dispatch_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(Text, nullable=False)
    trigger_id = Column(Text, nullable=False, index=True)
    trigger_type = Column(Text, nullable=False)
    source_account_id = Column(Text, nullable=False)
    actor_id = Column(Text, nullable=False)
    automation_id = Column(Text)
    outcome = Column(Text, nullable=False)  # sent, skipped-duplicate, skipped-no-match, failed
    error = Column(Text)
    error_kind = Column(Text)
    provider_message_id = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
