"""
Custom exceptions for the batch registration engine

Operational failures raised by adapters are captured by the engine and turned
into item diagnostics; only contract violations (malformed items, invalid
configuration) escape to callers.
"""

from typing import Iterable, Optional


class AutomationError(Exception):
    """Base exception class for all automation-related errors"""

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "AUTOMATION_ERROR"
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} (Code: {self.error_code}, Details: {self.details})"
        return f"{self.message} (Code: {self.error_code})"


class SessionOpenError(AutomationError):
    """Exception raised when a session with the target system cannot be opened"""

    def __init__(self, message: str, adapter: str = "unknown", details: Optional[dict] = None):
        super().__init__(message, "SESSION_OPEN_ERROR", details)
        self.adapter = adapter


class SessionLostError(AutomationError):
    """Exception raised when the open session disappeared and could not be recovered"""

    def __init__(self, session_id: Optional[str] = None, reason: Optional[str] = None):
        message = "Session with the target system was lost"
        if session_id:
            message += f" (session: {session_id})"
        if reason:
            message += f": {reason}"

        details = {
            "session_id": session_id,
            "reason": reason
        }
        super().__init__(message, "SESSION_LOST", details)
        self.session_id = session_id
        self.reason = reason


class ElementNotFoundError(AutomationError):
    """Exception raised when a locator strategy does not resolve to a control"""

    def __init__(self, strategy_spec: str, control_id: Optional[str] = None, timeout: Optional[float] = None):
        message = f"Could not find {control_id or 'element'} with strategy: {strategy_spec}"
        if timeout:
            message += f" (timeout: {timeout}s)"

        details = {
            "strategy_spec": strategy_spec,
            "control_id": control_id,
            "timeout": timeout
        }
        super().__init__(message, "ELEMENT_NOT_FOUND", details)
        self.strategy_spec = strategy_spec
        self.control_id = control_id
        self.timeout = timeout


class StrategiesExhaustedError(AutomationError):
    """Exception raised when a required control never appeared with any known strategy"""

    def __init__(self, control_id: str, tried: Iterable[str] = ()):
        tried = list(tried)
        message = f"Required control '{control_id}' not found after {len(tried)} strategies"
        super().__init__(message, "STRATEGIES_EXHAUSTED", {"control_id": control_id, "tried": tried})
        self.control_id = control_id
        self.tried = tried


class ActionFailedError(AutomationError):
    """Exception raised when acting on a located control fails"""

    def __init__(self, action: str, control_id: str, details: Optional[dict] = None):
        message = f"Failed to {action} on control: {control_id}"
        error_details = {"action": action, "control_id": control_id}
        if details:
            error_details.update(details)

        super().__init__(message, "ACTION_FAILED", error_details)
        self.action = action
        self.control_id = control_id


class NoMatchError(AutomationError):
    """Exception raised when the name resolver finds no offered option for an item"""

    def __init__(self, label: str, offered: Iterable[str] = ()):
        offered = list(offered)
        message = f"No matching option for '{label}' among {len(offered)} offered options"
        super().__init__(message, "NO_MATCH", {"label": label, "offered": offered[:20]})
        self.label = label
        self.offered = offered


class AdapterTimeoutError(AutomationError):
    """Exception raised when an adapter call exceeds its time allowance"""

    def __init__(self, operation: str, timeout: float, details: Optional[dict] = None):
        message = f"Operation '{operation}' timed out after {timeout} seconds"
        error_details = {
            "operation": operation,
            "timeout": timeout
        }
        if details:
            error_details.update(details)

        super().__init__(message, "TIMEOUT_ERROR", error_details)
        self.operation = operation
        self.timeout = timeout


class NetworkError(AutomationError):
    """Exception raised when network-related errors occur"""

    def __init__(self, message: str, url: Optional[str] = None, status_code: Optional[int] = None):
        error_details = {}
        if url:
            error_details["url"] = url
        if status_code:
            error_details["status_code"] = status_code

        super().__init__(message, "NETWORK_ERROR", error_details)
        self.url = url
        self.status_code = status_code


class ArbiterTimeoutError(AutomationError):
    """Exception raised when an arbiter slot is force-reclaimed from a hung operation"""

    def __init__(self, operation_id: str, timeout: float):
        message = f"Operation '{operation_id}' held its slot longer than {timeout} seconds"
        super().__init__(message, "ARBITER_TIMEOUT", {"operation_id": operation_id, "timeout": timeout})
        self.operation_id = operation_id
        self.timeout = timeout


class ConfigurationError(AutomationError):
    """Exception raised when engine configuration is invalid"""

    def __init__(self, field: str, reason: str):
        super().__init__(f"Invalid configuration '{field}': {reason}", "CONFIG_ERROR",
                         {"field": field, "reason": reason})
        self.field = field
        self.reason = reason


class InvalidItemError(AutomationError, ValueError):
    """Exception raised when an item violates the registration item contract"""

    def __init__(self, reason: str, label: Optional[str] = None):
        message = f"Invalid item: {reason}"
        super().__init__(message, "INVALID_ITEM", {"label": label, "reason": reason})
        self.reason = reason
        self.label = label
