class PipelineError(Exception):
    """Base class for failures inside the event pipeline."""


class TransientIOError(PipelineError):
    """A backend (queue, store, send API, LLM) was unreachable or rate limited."""


class PermanentEventError(PipelineError):
    """The event can never be processed; retrying will not help."""


class UnknownAccountError(PermanentEventError):
    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Unknown Instagram account: {account_id}")
