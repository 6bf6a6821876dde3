import time

DAY_MS = 86_400_000


def now_ms() -> int:
    return int(time.time() * 1000)


def seconds_to_ms(seconds: int) -> int:
    return int(seconds) * 1000
