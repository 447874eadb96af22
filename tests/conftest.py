import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("EVENT_WORKER_ENABLED", "false")

from datetime import datetime, timedelta, timezone  # noqa: E402
from typing import Optional  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.database import Base  # noqa: E402
from app.schemas.events import InboundEvent, TriggerType  # noqa: E402
from app.services.automation_rules import AiAction, AutomationRule, TemplateAction  # noqa: E402
from app.services.errors import UnknownAccountError  # noqa: E402
from app.services.kv_store import InMemoryStore  # noqa: E402
from app.services.result import PERMANENT, Result  # noqa: E402

ACCOUNT_ID = "17841400000000001"
BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_714_564_800.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeMessenger:
    """Records sends; replays queued results, then succeeds."""

    def __init__(self):
        self.sent: list[dict] = []
        self.comment_replies: list[dict] = []
        self.results: list[Result] = []

    async def send(self, account_id, recipient_id, text, *, access_token, comment_id=None):
        self.sent.append(
            {
                "account_id": account_id,
                "recipient_id": recipient_id,
                "text": text,
                "access_token": access_token,
                "comment_id": comment_id,
            }
        )
        if self.results:
            return self.results.pop(0)
        return Result.success(f"mid.{len(self.sent)}")

    async def reply_to_comment(self, comment_id, text, *, access_token):
        self.comment_replies.append({"comment_id": comment_id, "text": text})
        return Result.success(f"reply.{len(self.comment_replies)}")

    def fail_next(self, error: str = "http_500", code: Optional[str] = None) -> None:
        self.results.append(Result.failure(error, code) if code else Result.failure(error))

    def fail_permanently_next(self) -> None:
        self.results.append(Result.failure("http_400", PERMANENT))


class FakeRuleStore:
    def __init__(self, rules=None, account_id: str = ACCOUNT_ID, token: str = "token-123"):
        self.rules = list(rules or [])
        self.account_id = account_id
        self.token = token

    def list_active_rules(self, account_id: str):
        if account_id != self.account_id:
            raise UnknownAccountError(account_id)
        return [rule for rule in self.rules if rule.active]

    def get_access_token(self, account_id: str) -> str:
        if account_id != self.account_id:
            raise UnknownAccountError(account_id)
        return self.token


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryStore(clock=clock)


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def rule_store():
    return FakeRuleStore()


@pytest.fixture
def make_event():
    counter = {"n": 0}

    def _make(**overrides) -> InboundEvent:
        counter["n"] += 1
        data = {
            "request_id": f"req_{counter['n']}",
            "source_account_id": ACCOUNT_ID,
            "trigger_type": TriggerType.COMMENT,
            "trigger_id": "c1",
            "trigger_text": "hello",
            "actor_id": "U1",
            "actor_username": "jane",
            "target_resource_id": "media-1",
        }
        data.update(overrides)
        return InboundEvent(**data)

    return _make


@pytest.fixture
def make_rule():
    def _make(
        rule_id: str = "rule-1",
        *,
        keywords=("hello",),
        message: str = "Hi!",
        ai_prompt: Optional[str] = None,
        fallback: str = "Thanks for reaching out!",
        max_length: int = 800,
        comment_reply: Optional[str] = None,
        trigger_type: TriggerType = TriggerType.COMMENT,
        scope=(),
        active: bool = True,
        updated_minutes: int = 0,
    ) -> AutomationRule:
        if ai_prompt is not None:
            action = AiAction(prompt=ai_prompt, fallback=fallback, max_length=max_length, comment_reply=comment_reply)
        else:
            action = TemplateAction(text=message, comment_reply=comment_reply)
        return AutomationRule(
            id=rule_id,
            owner_id="user-1",
            trigger_type=trigger_type,
            keywords=tuple(keywords),
            action=action,
            scoped_resource_ids=frozenset(scope),
            active=active,
            updated_at=BASE_TIME + timedelta(minutes=updated_minutes),
        )

    return _make


@pytest.fixture
def session_factory():
    """SQLite in-memory database with the service tables."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()
