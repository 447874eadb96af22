from app.services.errors import (
    PermanentEventError,
    PipelineError,
    TransientIOError,
    UnknownAccountError,
)
from app.services.state_machine import (
    InvalidTransitionError,
    SessionState,
    can_transition,
    transition,
)
