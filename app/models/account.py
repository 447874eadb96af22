from sqlalchemy import Column, DateTime, Text
from sqlalchemy.sql import func

from app.database import Base


class Account(Base):
    """Connected Instagram business account of a dashboard user."""

    __tablename__ = "accounts"

    id = Column(Text, primary_key=True)
    user_id = Column(Text, nullable=False, index=True)
    provider = Column(Text, nullable=False, default="instagram")
    provider_account_id = Column(Text, nullable=False, unique=True)
    access_token = Column(Text)
    scope = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
