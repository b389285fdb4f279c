"""Shared slowapi limiter."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from labcal.config import get_settings


def webhook_rate_limit() -> str:
    return f"{get_settings().webhook_rate_limit_per_minute}/minute"


limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{get_settings().rate_limit_per_minute}/minute"],
)
