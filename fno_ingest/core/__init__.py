from .config import Settings, get_settings
from .database import MongoDB
from .error_handling import (
    AppError,
    DatabaseConnectionError,
    ErrorTracker,
    UpstreamError,
)
