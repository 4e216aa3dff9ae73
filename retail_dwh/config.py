"""
Engine configuration read from the environment (and a local .env file).
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

DUPLICATE_POLICIES = ('latest', 'reject')


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    normalized = value.strip().lower()
    if normalized in ('1', 'true', 'yes', 'on'):
        return True
    if normalized in ('0', 'false', 'no', 'off'):
        return False
    raise ValueError(f"{name} must be a boolean, got {value!r}")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


@dataclass(frozen=True)
class EngineSettings:
    """
    Settings for one load run.

    Attributes:
        job_name: Package/job name written to the audit table
        default_boh: Beginning on-hand used when no prior-day snapshot exists
        fill_gaps: Emit zero-sale snapshots for days without sales
        duplicate_policy: 'latest' keeps the newest staged row per natural key,
            'reject' fails the batch
        customer_spend_rate: Conversion rate applied to the customer spend metric
        log_level: Logging level for engine components
    """
    job_name: str = 'retail_dwh_load'
    default_boh: int = 100
    fill_gaps: bool = False
    duplicate_policy: str = 'latest'
    customer_spend_rate: int = 1
    log_level: str = 'INFO'

    def __post_init__(self):
        if not self.job_name:
            raise ValueError("job_name must not be empty")
        if self.duplicate_policy not in DUPLICATE_POLICIES:
            raise ValueError(
                f"duplicate_policy must be one of {DUPLICATE_POLICIES}, got {self.duplicate_policy!r}"
            )

    @classmethod
    def from_env(cls, job_name: Optional[str] = None) -> 'EngineSettings':
        """Build settings from environment variables, falling back to defaults."""
        return cls(
            job_name=job_name or os.getenv('ETL_JOB_NAME', cls.job_name),
            default_boh=_env_int('INVENTORY_DEFAULT_BOH', cls.default_boh),
            fill_gaps=_env_bool('INVENTORY_FILL_GAPS', cls.fill_gaps),
            duplicate_policy=os.getenv('STAGING_DUPLICATE_POLICY', cls.duplicate_policy).strip().lower(),
            customer_spend_rate=_env_int('CUSTOMER_SPEND_RATE', cls.customer_spend_rate),
            log_level=os.getenv('LOG_LEVEL', cls.log_level),
        )
