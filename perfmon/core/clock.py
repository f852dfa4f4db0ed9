from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def elapsed_ms(started: float, finished: float) -> int:
    return int(round((finished - started) * 1000))
