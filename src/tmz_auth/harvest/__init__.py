"""Token acquisition: strategies, recovery and the controlling state machine.

Usage:
    from tmz_auth.browser import SessionHost
    from tmz_auth.harvest import AcquisitionController, RunConfig, Succeeded

    controller = AcquisitionController(SessionHost(), RunConfig(), profile_dir=profile)
    outcome = await controller.run()
    if isinstance(outcome, Succeeded):
        print(outcome.tokens)
"""

from .controller import (
    AcquisitionController,
    AcquisitionOutcome,
    Location,
    RunConfig,
    RunStatus,
    SessionExpiredHeadless,
    State,
    Succeeded,
    Tick,
    TimedOut,
    classify_url,
    next_state,
)
from .diagnostics import DiagnosticSink, LoggingSink, NullSink
from .scopes import TEAMS_SCOPES, ResourceScope
from .tokens import TokenSet, is_complete, looks_like_real_token

__all__ = [
    "AcquisitionController",
    "AcquisitionOutcome",
    "DiagnosticSink",
    "Location",
    "LoggingSink",
    "NullSink",
    "ResourceScope",
    "RunConfig",
    "RunStatus",
    "SessionExpiredHeadless",
    "State",
    "Succeeded",
    "TEAMS_SCOPES",
    "Tick",
    "TimedOut",
    "TokenSet",
    "classify_url",
    "is_complete",
    "looks_like_real_token",
    "next_state",
]
