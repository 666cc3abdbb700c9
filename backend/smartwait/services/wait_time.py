from smartwait.core.config import get_settings


def estimate_wait_minutes(position: int, minutes_per_position: int = None) -> int:
    """
    Estimated wait for a queue position.

    The patient at position 1 is next and waits zero minutes; every place
    behind them adds a fixed number of minutes.
    """
    if minutes_per_position is None:
        minutes_per_position = get_settings().queue.WAIT_MINUTES_PER_POSITION
    return max(0, (position - 1) * minutes_per_position)
