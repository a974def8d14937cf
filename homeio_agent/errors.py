from typing import Any, Dict, Optional


class DeployError(Exception):
    """A deploy stage failed. `stage` names where, `details` carries captured context."""

    def __init__(self, stage: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.stage = stage
        self.message = message
        self.details = details or {}


class ValidationError(DeployError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("validation", message, details)


class DependencyError(DeployError):
    def __init__(self, missing, details: Optional[Dict[str, Any]] = None):
        self.missing = list(missing)
        super().__init__(
            "dependencies",
            "Missing dependencies: " + ", ".join(self.missing),
            {**(details or {}), "missing": self.missing},
        )


class ResolutionError(DeployError):
    def __init__(self, message: str = "Compose file not found. Provide compose content or ensure the app is in a store."):
        super().__init__("compose:resolve", message)


class PersistenceError(DeployError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("record", message, details)


class DeployInFlightError(DeployError):
    def __init__(self, app_id: str):
        super().__init__("guard", f"App {app_id} is already being deployed, try again later")
        self.app_id = app_id
