"""persona-context: context assembly and auto-summarization for character chat."""

from .config import load_config
from .engine import ChatEngine, TurnHandle
from .types import (
    BillingError,
    DurableSummary,
    Message,
    PersonaContextConfig,
    PersonaContextError,
    TurnEvent,
    TurnOutcome,
    TurnRequest,
    TurnState,
    TurnValidationError,
)

__version__ = "0.1.0"

__all__ = [
    "ChatEngine",
    "TurnHandle",
    "load_config",
    "BillingError",
    "DurableSummary",
    "Message",
    "PersonaContextConfig",
    "PersonaContextError",
    "TurnEvent",
    "TurnOutcome",
    "TurnRequest",
    "TurnState",
    "TurnValidationError",
]
