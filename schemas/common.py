from datetime import datetime, timezone
from typing import Annotated

from pydantic import PlainSerializer


def _utc_iso(value: datetime) -> str:
    # Columns hold naive UTC
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


UtcDateTime = Annotated[datetime, PlainSerializer(_utc_iso, return_type=str, when_used="json")]
