from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, Text
from sqlalchemy.sql import func

from app.database import Base


class Automation(Base):
    __tablename__ = "automations"

    id = Column(Text, primary_key=True)
    user_id = Column(Text, nullable=False, index=True)
    name = Column(Text)
    trigger_type = Column(Text, nullable=False)  # comment, dm, follow
    keywords = Column(JSON, nullable=False, default=list)
    action_type = Column(Text, nullable=False, default="message")  # message, ai
    message = Column(Text)
    comment_reply = Column(Text)
    ai_prompt = Column(Text)
    ai_max_length = Column(Integer)
    posts = Column(JSON, nullable=False, default=list)
    dm_mode = Column(Text, default="direct")
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
