"""Exceptions raised by the token harvester."""


class TokenHarvestError(Exception):
    """Base class for harvester failures."""


class SessionLaunchError(TokenHarvestError):
    """Raised when the browser or its profile directory cannot be set up."""

    def __init__(self, message: str, profile_dir: str | None = None):
        self.profile_dir = profile_dir
        if profile_dir:
            message = f"{message} (profile: {profile_dir})"
        super().__init__(message)
