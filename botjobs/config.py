"""
Engine configuration.

Values live in the store's config table under hyphenated keys (set with
`botjobs config set batch-size 20`); anything unset falls back to DEFAULTS.
"""
import math
from dataclasses import dataclass, fields
from typing import Dict

from botjobs.exceptions import ConfigError

DEFAULTS: Dict[str, str] = {
    'batch-size': '10',
    'max-attempts': '3',
    'job-timeout': '5',
    'stale-after': '60',
    'concurrency': '4',
}

KNOWN_KEYS = tuple(DEFAULTS)


@dataclass(frozen=True)
class EngineConfig:
    """
    Attributes:
        batch_size: Most jobs a single run may claim
        max_attempts: Claims allowed before a job is forced to failed
        job_timeout: Seconds an action may run before its job fails
        stale_after: Seconds an in_flight claim lives before it may be reclaimed
        concurrency: Worker threads used to execute one batch
    """
    batch_size: int = 10
    max_attempts: int = 3
    job_timeout: float = 5.0
    stale_after: float = 60.0
    concurrency: int = 4

    def __post_init__(self):
        for name in ('batch_size', 'max_attempts', 'concurrency'):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")
        if self.job_timeout <= 0:
            raise ConfigError(f"job_timeout must be > 0, got {self.job_timeout!r}")
        if self.stale_after <= self.job_timeout:
            raise ConfigError(
                f"stale_after ({self.stale_after}s) must exceed job_timeout ({self.job_timeout}s)"
            )
        batch_time = self.job_timeout * math.ceil(self.batch_size / self.concurrency)
        if self.stale_after <= batch_time:
            raise ConfigError(
                f"stale_after ({self.stale_after}s) must exceed the time to work through one batch "
                f"({self.batch_size} jobs, {self.concurrency} at a time, {self.job_timeout}s each: {batch_time}s)"
            )

    @classmethod
    def from_mapping(cls, values: Dict[str, str], **overrides) -> "EngineConfig":
        """Build a config from hyphenated string values (as stored), then apply overrides."""
        merged = dict(DEFAULTS)
        merged.update({k: v for k, v in values.items() if k in DEFAULTS})

        kwargs = {}
        for f in fields(cls):
            raw = merged[f.name.replace('_', '-')]
            caster = int if f.type in (int, 'int') else float
            try:
                kwargs[f.name] = caster(raw)
            except (TypeError, ValueError):
                raise ConfigError(f"{f.name.replace('_', '-')} must be a number, got {raw!r}") from None

        kwargs.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**kwargs)

    @classmethod
    def from_storage(cls, storage, **overrides) -> "EngineConfig":
        """Load config from the store's config table."""
        return cls.from_mapping(storage.list_config(), **overrides)


def validate_value(key: str, value: str, current: Dict[str, str]) -> None:
    """Check that storing key=value on top of the `current` values gives a valid config."""
    if key not in DEFAULTS:
        raise ConfigError(f"Unknown config key '{key}'. Known keys: {', '.join(KNOWN_KEYS)}")
    EngineConfig.from_mapping({**current, key: value})
