"""Startup configuration.

``validate_config`` checks that all required environment variables are set
before the server accepts webhooks, so a missing key is a clear startup
failure rather than a silent mid-call crash.  ``Settings.from_env`` gathers
the values the collaborators need.
"""

import logging
import os
import sys
from dataclasses import dataclass

logger = logging.getLogger(__name__)

REQUIRED_VARS = [
    "CLINIKO_API_KEY",
    "CLINIKO_BASE_URL",
    "CLINIKO_BUSINESS_ID",
    "CLINIKO_PRACTITIONER_ID",
    "CLINIKO_APPT_TYPE_ID",
    "TWILIO_ACCOUNT_SID",
    "TWILIO_AUTH_TOKEN",
    "TWILIO_PHONE_NUMBER",
]

OPTIONAL_VARS = [
    "CLINIKO_NEW_PATIENT_APPT_TYPE_ID",
    "CLINIC_NAME",
    "CLINIC_TIMEZONE",
    "BOOKING_LINK_URL",
    "OPENAI_API_KEY",
    "DASHBOARD_ALERTS_URL",
    "DASHBOARD_CALLS_URL",
    "DASHBOARD_WEBHOOK_SECRET",
    "REDIS_URL",
    "PUBLIC_BASE_URL",
    "LOG_LEVEL",
]


@dataclass
class Settings:
    clinic_name: str = "the clinic"
    timezone: str = "Australia/Brisbane"
    cliniko_api_key: str = ""
    cliniko_base_url: str = ""
    cliniko_business_id: str = ""
    cliniko_practitioner_id: str = ""
    standard_appt_type_id: str = ""
    new_patient_appt_type_id: str = ""
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    booking_link_url: str = ""
    openai_api_key: str = ""
    dashboard_alerts_url: str = ""
    dashboard_calls_url: str = ""
    dashboard_webhook_secret: str = ""
    redis_url: str = ""
    public_base_url: str = ""
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        standard_type = os.getenv("CLINIKO_APPT_TYPE_ID", "")
        return cls(
            clinic_name=os.getenv("CLINIC_NAME", "the clinic"),
            timezone=os.getenv("CLINIC_TIMEZONE", "Australia/Brisbane"),
            cliniko_api_key=os.getenv("CLINIKO_API_KEY", ""),
            cliniko_base_url=os.getenv("CLINIKO_BASE_URL", ""),
            cliniko_business_id=os.getenv("CLINIKO_BUSINESS_ID", ""),
            cliniko_practitioner_id=os.getenv("CLINIKO_PRACTITIONER_ID", ""),
            standard_appt_type_id=standard_type,
            new_patient_appt_type_id=os.getenv("CLINIKO_NEW_PATIENT_APPT_TYPE_ID", "") or standard_type,
            twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
            twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
            twilio_phone_number=os.getenv("TWILIO_PHONE_NUMBER", ""),
            booking_link_url=os.getenv("BOOKING_LINK_URL", ""),
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            dashboard_alerts_url=os.getenv("DASHBOARD_ALERTS_URL", ""),
            dashboard_calls_url=os.getenv("DASHBOARD_CALLS_URL", ""),
            dashboard_webhook_secret=os.getenv("DASHBOARD_WEBHOOK_SECRET", ""),
            redis_url=os.getenv("REDIS_URL", ""),
            public_base_url=os.getenv("PUBLIC_BASE_URL", "").rstrip("/"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


def validate_config() -> None:
    """Validate environment variables at startup.

    Exits the process with a clear error if any required variable is missing
    or empty.  Logs warnings for missing optional variables.
    """
    missing = [var for var in REQUIRED_VARS if not os.getenv(var)]

    if missing:
        print(
            f"\nFATAL: Missing required environment variables:\n"
            f"  {', '.join(missing)}\n"
            f"\nSet them in .env (local) or your deployment secrets.\n",
            file=sys.stderr,
        )
        sys.exit(1)

    for var in OPTIONAL_VARS:
        if not os.getenv(var):
            logger.warning("Optional env var %s is not set", var)
