import os


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


# --- Database Configuration ---
DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    DATABASE_URL = "sqlite:///./decision_pipeline.db"  # Default to a local SQLite DB

SQLALCHEMY_ECHO = os.getenv("SQLALCHEMY_ECHO", "False").lower() in ("true", "1", "t")

# --- Inference Collaborator ---
INFERENCE_URL = os.getenv("INFERENCE_URL", "")
INFERENCE_TIMEOUT_SECONDS = _get_float("INFERENCE_TIMEOUT_SECONDS", 10.0)

# --- Market Data Collaborator ---
MARKET_DATA_URL = os.getenv("MARKET_DATA_URL", "")
MAX_DATA_AGE_SECONDS = _get_float("MAX_DATA_AGE_SECONDS", 300.0)

# --- Cycle Timeouts ---
AGENT_TIMEOUT_SECONDS = _get_float("AGENT_TIMEOUT_SECONDS", 5.0)
STORE_TIMEOUT_SECONDS = _get_float("STORE_TIMEOUT_SECONDS", 5.0)
EXECUTION_TIMEOUT_SECONDS = _get_float("EXECUTION_TIMEOUT_SECONDS", 10.0)
MARKET_DATA_TIMEOUT_SECONDS = _get_float("MARKET_DATA_TIMEOUT_SECONDS", 10.0)

# --- Risk Controls ---
# Unset means an emergency can never be cleared programmatically.
EMERGENCY_RESET_TOKEN = os.getenv("EMERGENCY_RESET_TOKEN") or None
RISK_FREE_RATE = _get_float("RISK_FREE_RATE", 0.02)
ERROR_WINDOW_SECONDS = _get_float("ERROR_WINDOW_SECONDS", 3600.0)

# --- Scheduler ---
CYCLE_INTERVAL_SECONDS = _get_float("CYCLE_INTERVAL_SECONDS", 30.0)
PIPELINE_USERS = os.getenv("PIPELINE_USERS", "")  # e.g. "alice=100000,bob=25000"
