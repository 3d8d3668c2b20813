from datetime import timedelta
from random import Random

from tests.helpers.time_utils import BASE_TIME, ManualClock, TimeGenerator


def test_time_generator_increases_with_seed() -> None:
    gen = TimeGenerator(_rng=Random(42))

    ts1 = gen()
    ts2 = gen()
    ts3 = gen()

    assert ts1 < ts2 < ts3
    gaps = [(ts2 - ts1).total_seconds(), (ts3 - ts2).total_seconds()]
    for gap in gaps:
        assert 5 <= gap <= 60

    # Deterministic given the same seed
    gen_again = TimeGenerator(_rng=Random(42))
    ts1_b, ts2_b, ts3_b = gen_again(), gen_again(), gen_again()
    assert gaps == [(ts2_b - ts1_b).total_seconds(), (ts3_b - ts2_b).total_seconds()]


def test_time_generator_reset_starts_over() -> None:
    gen = TimeGenerator()
    first = [gen(), gen()]

    gen.reset()

    assert [gen(), gen()] == first
    assert first[0] > BASE_TIME


def test_manual_clock_only_moves_when_advanced() -> None:
    clock = ManualClock()

    assert clock() == BASE_TIME
    assert clock() == BASE_TIME
    assert clock.advance(timedelta(hours=1)) == BASE_TIME + timedelta(hours=1)
    assert clock() == BASE_TIME + timedelta(hours=1)
