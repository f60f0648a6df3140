import pytest
from hypothesis import given, strategies as st

from fairplay.settlement.outcome import BPS, GameOutcome, MultiplierTable, uniform_int


@given(st.binary(min_size=1, max_size=40), st.integers(min_value=1, max_value=10**9))
def test_uniform_int_stays_in_range(value, bound):
    assert 0 <= uniform_int(value, bound) < bound


def test_uniform_int_is_deterministic_and_rejects_biased_tail():
    assert uniform_int(b"\xfe", 3) == 254 % 3
    # 255 lies past the largest multiple of 3 below 256 and is redrawn
    a = uniform_int(b"\xff", 3)
    assert a == uniform_int(b"\xff", 3)
    assert 0 <= a < 3


@pytest.mark.parametrize("value, bound", [(b"\x01", 0), (b"\x01", -4), (b"", 10)])
def test_uniform_int_argument_checks(value, bound):
    with pytest.raises(ValueError):
        uniform_int(value, bound)


def test_table_pays_by_bucket():
    table = MultiplierTable([(1, 0), (1, 30_000)])
    lose = table.evaluate(b"\x00" * 32, stake=100)
    win = table.evaluate(b"\x00" * 31 + b"\x01", stake=100)
    assert (lose.payout, lose.win, lose.detail) == (0, False, {"bucket": 0, "draw": 0})
    assert (win.payout, win.multiplier_bps, win.win) == (300, 30_000, True)


def test_variant_tables_and_fallback():
    table = MultiplierTable([(1, BPS)], variants={"hi": [(1, 50_000)]})
    rv = b"\x42" * 32
    assert table.evaluate(rv, 10, variant="hi").payout == 50
    assert table.evaluate(rv, 10, variant="unknown").payout == 10


@pytest.mark.parametrize("buckets", [[], [(0, BPS)], [(1, -1)]])
def test_table_validation(buckets):
    with pytest.raises(ValueError):
        MultiplierTable(buckets)


def test_break_even_is_not_a_win():
    out = GameOutcome(payout=100, multiplier_bps=BPS)
    assert not out.win
    assert out.to_dict() == {"payout": 100, "multiplierBps": BPS, "win": False, "detail": {}}
