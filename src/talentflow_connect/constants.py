"""Shared constants used by the talentflow_connect connectivity layer."""

DEFAULT_PLACEHOLDER_MARKERS = (
    "your-project-url-here",
    "your-anon-key-here",
    "your_supabase",
    "example",
    "seu-projeto",
)
AUTH_FAILURE_STATUSES = {401, 403}
NOT_FOUND_STATUS = 404
CLIENT_INFO_HEADER = "talentflow-connect"

PLACEHOLDER_CREDENTIALS_MESSAGE = (
    "Please configure your backend credentials. "
    "The current values are placeholders."
)
CLIENT_NOT_INITIALIZED_MESSAGE = "Backend client not initialized."
OFFLINE_MESSAGE = "Offline mode is enabled; backend calls are disabled."
CREDENTIAL_EXPIRED_MESSAGE = (
    "Your backend credential has expired. "
    "Please issue a new key and update your configuration."
)
AUTH_FAILED_MESSAGE = (
    "Authentication failed. Your backend credentials may be invalid or expired."
)
TIMEOUT_MESSAGE = "Connection timeout. The backend is taking too long to respond."
CANNOT_REACH_MESSAGE = (
    "Cannot connect to the backend. Check your internet connection and "
    "verify that the backend URL is correct."
)
IN_PROGRESS_MESSAGE = "A health check is already in progress. Try again shortly."
CIRCUIT_OPEN_MESSAGE = (
    "Too many failed connection attempts. Please wait {seconds} seconds "
    "before trying again."
)
