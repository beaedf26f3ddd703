from cardcrawler.breaker import CircuitBreaker


def test_trips_only_when_streak_and_rate_both_bad():
    breaker = CircuitBreaker(consecutive_threshold=5, success_floor=0.3, window=20)
    for _ in range(20):
        breaker.record(True)
    for _ in range(5):
        breaker.record(False)
    # five straight failures, but 15/20 still succeeded
    assert not breaker.should_trip()

    for _ in range(10):
        breaker.record(False)
    assert breaker.rolling_success_rate < 0.3
    assert breaker.should_trip()


def test_trip_resets_streak_and_picks_cooldown():
    breaker = CircuitBreaker(consecutive_threshold=3, cooldown_seconds=60, network_down_cooldown_seconds=120)
    for _ in range(3):
        breaker.record(False)
    assert breaker.should_trip()

    assert breaker.trip() == 60
    assert breaker.consecutive_failures == 0
    assert not breaker.should_trip()
    assert breaker.trip(network_down=True) == 120
    assert breaker.trips == 2


def test_success_breaks_the_streak():
    breaker = CircuitBreaker(consecutive_threshold=3, success_floor=0.9)
    breaker.record(False)
    breaker.record(False)
    breaker.record(True)
    breaker.record(False)
    assert breaker.consecutive_failures == 1
    assert not breaker.should_trip()


def test_empty_window_counts_as_healthy():
    assert CircuitBreaker().rolling_success_rate == 1.0
