import os
import sys
from typing import List

# ====================================================================================
# ENVIRONMENT CONFIGURATION: PROD / STAGE / LOCAL isolation via prefixes
# ====================================================================================
# Every variable is read with the environment prefix:
#   - PROD: PROD_DATABASE_URL, PROD_TWILIO_AUTH_TOKEN, ...
#   - STAGE: STAGE_DATABASE_URL, STAGE_TWILIO_AUTH_TOKEN, ...
#   - LOCAL: LOCAL_DATABASE_URL, LOCAL_TWILIO_AUTH_TOKEN, ...
#
# A STAGE notifier can never pick up PROD_DATABASE_URL and text real customers.
# ====================================================================================

APP_ENV = os.getenv("APP_ENV", "prod").lower()
if APP_ENV not in ("prod", "stage", "local"):
    print(f"ERROR: Invalid APP_ENV={APP_ENV}. Must be one of: prod, stage, local", file=sys.stderr)
    sys.exit(1)

IS_LOCAL = APP_ENV == "local"
IS_STAGE = APP_ENV == "stage"
IS_PROD = APP_ENV == "prod"


def env(key: str, default: str = "") -> str:
    """
    Get an environment variable using the environment prefix

    Args:
        key: Variable name without prefix (e.g. "DATABASE_URL")
        default: Value returned when the variable is not set

    Returns:
        Value of the prefixed variable

    Example:
        env("DATABASE_URL") -> value of "STAGE_DATABASE_URL" (when APP_ENV=stage)
    """
    env_key = f"{APP_ENV.upper()}_{key}"
    return os.getenv(env_key, default)


def _env_bool(key: str, default: bool) -> bool:
    return env(key, default="true" if default else "false").lower() == "true"


# Variables that must never be read without a prefix
_DIRECT_USAGE_VARS = ["DATABASE_URL", "TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_PHONE_NUMBER"]

# ====================================================================================
# DATABASE
# ====================================================================================

DATABASE_URL = env("DATABASE_URL")

# Apply migrations/*.sql on startup. Off by default outside LOCAL: the shared
# store schema is owned by the queue service.
RUN_MIGRATIONS = _env_bool("RUN_MIGRATIONS", default=IS_LOCAL)

# ====================================================================================
# SMS (Twilio)
# ====================================================================================

TWILIO_ACCOUNT_SID = env("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = env("TWILIO_AUTH_TOKEN")
TWILIO_PHONE_NUMBER = env("TWILIO_PHONE_NUMBER")
TWILIO_API_URL = env("TWILIO_API_URL") or "https://api.twilio.com/2010-04-01"
TWILIO_API_TIMEOUT = float(env("TWILIO_API_TIMEOUT", default="10.0"))

# ====================================================================================
# WORKER
# ====================================================================================

# "once": single scan then exit (cron style), "loop": long-running worker
RUN_MODE = env("RUN_MODE", default="once").lower()
QUEUE_POLL_INTERVAL_SECONDS = int(env("QUEUE_POLL_INTERVAL_SECONDS", default="60"))
QUEUE_ITERATION_TIMEOUT_SECONDS = float(env("QUEUE_ITERATION_TIMEOUT_SECONDS", default="120"))


def is_twilio_configured() -> bool:
    return bool(TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN and TWILIO_PHONE_NUMBER)


def validate_config() -> List[str]:
    """
    Validate startup configuration.

    Secrets are checked for presence only and never echoed.

    Returns:
        List of human-readable problems (empty if configuration is valid)
    """
    problems = []
    prefix = APP_ENV.upper()

    for var in _DIRECT_USAGE_VARS:
        if os.getenv(var):
            problems.append(
                f"Direct usage of {var} is FORBIDDEN, use {prefix}_{var} instead"
            )

    if not DATABASE_URL:
        problems.append(f"{prefix}_DATABASE_URL is not set")

    # LOCAL may fall back to the console sender
    if not IS_LOCAL and not is_twilio_configured():
        problems.append(
            f"{prefix}_TWILIO_ACCOUNT_SID, {prefix}_TWILIO_AUTH_TOKEN and "
            f"{prefix}_TWILIO_PHONE_NUMBER must all be set"
        )

    if RUN_MODE not in ("once", "loop"):
        problems.append(f"{prefix}_RUN_MODE must be 'once' or 'loop', got: {RUN_MODE}")

    if QUEUE_POLL_INTERVAL_SECONDS <= 0:
        problems.append(f"{prefix}_QUEUE_POLL_INTERVAL_SECONDS must be positive")

    return problems
