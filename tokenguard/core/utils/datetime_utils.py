from collections.abc import Callable
import time

Clock = Callable[[], int]


def unix_now() -> int:
    """Current Unix time in whole seconds."""
    return int(time.time())
