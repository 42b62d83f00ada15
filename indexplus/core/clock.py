"""
Clock helpers — כל הזמנים נשמרים כ-UTC naive, כמו עמודות ה-DateTime במודלים.
"""
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """UTC now ללא tzinfo — תואם לעמודות DateTime ב-SQLite וב-PostgreSQL"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
