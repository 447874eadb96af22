from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class InstagramUserRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    username: Optional[str] = None


class InstagramMediaRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None


class InstagramCommentValue(BaseModel):
    """`changes[].value` for the comments field."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = Field(default=None, validation_alias=AliasChoices("id", "comment_id"))
    text: Optional[str] = Field(default=None, validation_alias=AliasChoices("text", "message"))
    from_user: Optional[InstagramUserRef] = Field(default=None, alias="from")
    media: Optional[InstagramMediaRef] = None
    media_id: Optional[str] = None
    parent_id: Optional[str] = None


class InstagramFollowValue(BaseModel):
    """`changes[].value` for the follows field."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    from_user: Optional[InstagramUserRef] = Field(
        default=None,
        validation_alias=AliasChoices("from", "follower"),
    )


class InstagramChange(BaseModel):
    model_config = ConfigDict(extra="ignore")

    field: str
    value: Optional[dict[str, Any]] = None


class InstagramMessageBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    mid: Optional[str] = None
    text: Optional[str] = None
    is_echo: bool = False


class InstagramMessagingEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sender: Optional[InstagramUserRef] = None
    recipient: Optional[InstagramUserRef] = None
    timestamp: Optional[int] = None
    message: Optional[InstagramMessageBody] = None


class InstagramEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    time: Optional[int] = None
    changes: list[InstagramChange] = Field(default_factory=list)
    messaging: list[InstagramMessagingEvent] = Field(default_factory=list)


class InstagramWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: str
    entry: list[InstagramEntry] = Field(default_factory=list)


class WebhookAcceptedResponse(BaseModel):
    success: bool
    requestId: str
    queuedForProcessing: bool
    eventCount: int = 0
