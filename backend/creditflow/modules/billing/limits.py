"""Plan feature limits.

A plan limit is either a bounded count or unlimited. The database
stores the bound as an integer and unlimited as NULL; the API speaks
``int | "unlimited"``.
"""

from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy import Integer
from sqlalchemy.types import TypeDecorator

UNLIMITED_LITERAL = "unlimited"


@dataclass(frozen=True)
class Bounded:
    limit: int

    def __post_init__(self) -> None:
        if self.limit < 0:
            raise ValueError(f"Feature limit must be non-negative, got {self.limit}")

    def allows(self, current_count: int) -> bool:
        """Whether one more item fits when ``current_count`` already exist."""
        return current_count < self.limit

    def to_value(self) -> int:
        return self.limit

    def __str__(self) -> str:
        return str(self.limit)


@dataclass(frozen=True)
class Unlimited:

    def allows(self, current_count: int) -> bool:
        return True

    def to_value(self) -> str:
        return UNLIMITED_LITERAL

    def __str__(self) -> str:
        return UNLIMITED_LITERAL


FeatureLimit = Union[Bounded, Unlimited]

UNLIMITED = Unlimited()


def parse_feature_limit(value: Union[int, str, None, Bounded, Unlimited]) -> FeatureLimit:
    """Parse an API or storage value into a FeatureLimit.

    Accepts a non-negative int, the literal ``"unlimited"``, None
    (unlimited) or an already-parsed limit.

    Raises:
        ValueError: For negative numbers or unknown strings
    """
    if isinstance(value, (Bounded, Unlimited)):
        return value
    if value is None:
        return UNLIMITED
    if isinstance(value, bool):
        raise ValueError(f"Invalid feature limit: {value!r}")
    if isinstance(value, int):
        return Bounded(value)
    if isinstance(value, str):
        if value.strip().lower() == UNLIMITED_LITERAL:
            return UNLIMITED
        if value.strip().isdigit():
            return Bounded(int(value.strip()))
    raise ValueError(f"Invalid feature limit: {value!r}")


class FeatureLimitType(TypeDecorator):
    """Column type mapping FeatureLimit to a nullable integer."""

    impl = Integer
    cache_ok = True

    def process_bind_param(self, value, dialect) -> Optional[int]:
        limit = parse_feature_limit(value)
        if isinstance(limit, Unlimited):
            return None
        return limit.limit

    def process_result_value(self, value, dialect) -> FeatureLimit:
        if value is None:
            return UNLIMITED
        return Bounded(value)
