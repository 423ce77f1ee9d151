import os
from dataclasses import dataclass

CONFIRMATION_WINDOW_SECONDS = float(os.getenv("DISPATCH_CONFIRMATION_WINDOW_SECONDS", "10"))
SEARCH_RADIUS_KM = float(os.getenv("DISPATCH_SEARCH_RADIUS_KM", "50"))
RETRY_INITIAL_SECONDS = float(os.getenv("DISPATCH_RETRY_INITIAL_SECONDS", "2"))
RETRY_FACTOR = float(os.getenv("DISPATCH_RETRY_FACTOR", "2"))
RETRY_MAX_DELAY_SECONDS = float(os.getenv("DISPATCH_RETRY_MAX_DELAY_SECONDS", "30"))
RETRY_MAX_ATTEMPTS = int(os.getenv("DISPATCH_RETRY_MAX_ATTEMPTS", "5"))
SUBSCRIBER_MAX_ATTEMPTS = int(os.getenv("DISPATCH_SUBSCRIBER_MAX_ATTEMPTS", "3"))


@dataclass(frozen=True)
class DispatchSettings:
    confirmation_window_seconds: float = CONFIRMATION_WINDOW_SECONDS
    search_radius_km: float = SEARCH_RADIUS_KM
    retry_initial_seconds: float = RETRY_INITIAL_SECONDS
    retry_factor: float = RETRY_FACTOR
    retry_max_delay_seconds: float = RETRY_MAX_DELAY_SECONDS
    retry_max_attempts: int = RETRY_MAX_ATTEMPTS
    subscriber_max_attempts: int = SUBSCRIBER_MAX_ATTEMPTS
