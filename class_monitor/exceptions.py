class MonitorError(Exception):
    """Base exception for the classroom monitor."""


class ConfigurationError(MonitorError):
    """Raised when a schedule, threshold or embedding setting is malformed."""


class InitializationError(MonitorError):
    """Raised when the detection or embedding models cannot be loaded."""


class DetectorError(MonitorError):
    """Raised when person detection inference fails."""


class EmbedderError(MonitorError):
    """Raised when the embedding model is used before it is loaded."""


class CameraError(MonitorError):
    """Raised when a frame cannot be acquired."""


class DatabaseError(MonitorError):
    """Raised when record store operations fail."""


class MonitorBusyError(MonitorError):
    """Raised when a manual capture is requested while a pass is running."""
